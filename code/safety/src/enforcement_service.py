"""
PuzzleGuard Enforcement Service
处罚执行 - 封禁、限制、警告、观察名单、成绩作废、审计日志

核心功能:
1. 用户处罚 (User Punishment)
2. 处罚撤销 / 申诉恢复 (Revocation & Restoration)
3. 监控与观察名单 (Monitoring & Watch List)
4. 成绩作废 (Result Invalidation)
5. 审计日志 (Audit Log)
"""
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from config.settings import RECORD_SCHEMA_VERSION
from kernel.src.ports import Clock, utc_now
from kernel.src.repository import (
    AUDIT_LOGS, COMPENSATIONS, DATA_REQUESTS, INVALIDATIONS, PUNISHMENTS, USER_MONITORING,
    InMemoryStore, RecordStore, dump_time, load_time
)

logger = logging.getLogger(__name__)


_DURATION_RE = re.compile(r"^(\d+)([mhdw])$")
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_duration(duration: Optional[str]) -> Optional[timedelta]:
    """'30d' / '24h' / '2w'；'permanent' 或空值返回 None"""
    if not duration or duration == "permanent":
        return None
    match = _DURATION_RE.match(duration.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration: {duration}")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def halve_duration(duration: Optional[str]) -> Optional[str]:
    """减半处罚时长（整天时按天表示，至少1小时）"""
    delta = parse_duration(duration)
    if delta is None:
        return duration
    hours = max(1, int(delta.total_seconds() // 3600) // 2)
    if hours % 24 == 0:
        return f"{hours // 24}d"
    return f"{hours}h"


# =============================================================================
# Enums
# =============================================================================
class PunishmentType(str, Enum):
    """处罚类型"""
    WARNING = "warning"                   # 警告
    RESTRICTION = "restriction"           # 临时限制
    TEMPORARY_BAN = "temporary_ban"       # 临时封禁
    PERMANENT_BAN = "permanent_ban"       # 永久封禁
    RESULT_INVALIDATION = "result_invalidation"  # 成绩作废


class MonitoringKind(str, Enum):
    """监控类型"""
    WATCH_LIST = "watch_list"             # 观察名单
    MONITORING = "monitoring"             # 加强监控


# =============================================================================
# Data Classes
# =============================================================================
@dataclass
class Punishment:
    """处罚"""
    punishment_id: str
    user_id: str
    punishment_type: PunishmentType
    reason: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[str] = None
    scope: Optional[str] = None

    # 关联（案件 / 举报 / 申诉）
    source_id: Optional[str] = None
    issued_by: Optional[str] = None

    # 状态
    is_active: bool = True
    revoked_reason: Optional[str] = None

    def in_effect(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        return self.end_time is None or now < self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "punishment_id": self.punishment_id,
            "user_id": self.user_id,
            "punishment_type": self.punishment_type.value,
            "reason": self.reason,
            "start_time": dump_time(self.start_time),
            "end_time": dump_time(self.end_time),
            "duration": self.duration,
            "scope": self.scope,
            "source_id": self.source_id,
            "issued_by": self.issued_by,
            "is_active": self.is_active,
            "revoked_reason": self.revoked_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Punishment":
        return cls(
            punishment_id=data["punishment_id"],
            user_id=data["user_id"],
            punishment_type=PunishmentType(data["punishment_type"]),
            reason=data["reason"],
            start_time=load_time(data["start_time"]),
            end_time=load_time(data.get("end_time")),
            duration=data.get("duration"),
            scope=data.get("scope"),
            source_id=data.get("source_id"),
            issued_by=data.get("issued_by"),
            is_active=data.get("is_active", True),
            revoked_reason=data.get("revoked_reason"),
        )


@dataclass
class MonitoringEntry:
    """观察名单 / 加强监控（每个用户每种类型一条，重复添加时刷新到期时间）"""
    user_id: str
    kind: MonitoringKind
    expires_at: datetime
    reason: str

    @property
    def entry_id(self) -> str:
        return f"{self.kind.value}:{self.user_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "expires_at": dump_time(self.expires_at),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringEntry":
        return cls(
            user_id=data["user_id"],
            kind=MonitoringKind(data["kind"]),
            expires_at=load_time(data["expires_at"]),
            reason=data.get("reason", ""),
        )


@dataclass
class ResultInvalidation:
    """成绩作废记录（按来源案件）"""
    source_id: str
    user_id: str
    scope: str
    invalidated_at: datetime
    restored: str = "none"                # none / partial / full

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "source_id": self.source_id,
            "user_id": self.user_id,
            "scope": self.scope,
            "invalidated_at": dump_time(self.invalidated_at),
            "restored": self.restored,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultInvalidation":
        return cls(
            source_id=data["source_id"],
            user_id=data["user_id"],
            scope=data["scope"],
            invalidated_at=load_time(data["invalidated_at"]),
            restored=data.get("restored", "none"),
        )


@dataclass
class Compensation:
    """申诉成功后的补偿"""
    compensation_id: str
    user_id: str
    source_id: str
    description: str
    issued_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "compensation_id": self.compensation_id,
            "user_id": self.user_id,
            "source_id": self.source_id,
            "description": self.description,
            "issued_at": dump_time(self.issued_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Compensation":
        return cls(
            compensation_id=data["compensation_id"],
            user_id=data["user_id"],
            source_id=data["source_id"],
            description=data.get("description", ""),
            issued_at=load_time(data["issued_at"]),
        )


@dataclass
class DataRequest:
    """补充数据采集请求"""
    request_id: str
    user_id: str
    reason: str
    requested_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "reason": self.reason,
            "requested_at": dump_time(self.requested_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataRequest":
        return cls(
            request_id=data["request_id"],
            user_id=data["user_id"],
            reason=data.get("reason", ""),
            requested_at=load_time(data["requested_at"]),
        )


@dataclass
class AuditLog:
    """审计日志"""
    log_id: str
    action: str
    actor_id: str
    target_id: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    # 同一时刻多条日志的先后顺序
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "log_id": self.log_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "target_id": self.target_id,
            "details": self.details,
            "timestamp": dump_time(self.timestamp),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLog":
        return cls(
            log_id=data["log_id"],
            action=data["action"],
            actor_id=data["actor_id"],
            target_id=data["target_id"],
            timestamp=load_time(data["timestamp"]),
            details=dict(data.get("details") or {}),
            sequence=int(data.get("sequence", 0)),
        )


# =============================================================================
# Enforcement Service
# =============================================================================
class EnforcementService:
    """处罚执行服务（全部状态经 RecordStore 持久化）"""

    def __init__(self, store: Optional[RecordStore] = None, clock: Optional[Clock] = None):
        self.store = store or InMemoryStore()
        self.store.register(PUNISHMENTS, Punishment)
        self.store.register(USER_MONITORING, MonitoringEntry)
        self.store.register(INVALIDATIONS, ResultInvalidation)
        self.store.register(COMPENSATIONS, Compensation)
        self.store.register(DATA_REQUESTS, DataRequest)
        self.store.register(AUDIT_LOGS, AuditLog)
        self.clock = clock or utc_now
        self._lock = threading.Lock()

        logger.info("EnforcementService initialized")

    # =========================================================================
    # Punishments
    # =========================================================================
    def issue_punishment(
        self,
        user_id: str,
        punishment_type: PunishmentType,
        reason: str,
        duration: Optional[str] = None,
        source_id: Optional[str] = None,
        issued_by: Optional[str] = None,
        scope: Optional[str] = None
    ) -> Punishment:
        """发放处罚"""
        now = self.clock()
        end_time = None
        delta = parse_duration(duration)
        if delta is not None and punishment_type in (PunishmentType.RESTRICTION, PunishmentType.TEMPORARY_BAN):
            end_time = now + delta

        punishment = Punishment(
            punishment_id=str(uuid.uuid4()),
            user_id=user_id,
            punishment_type=punishment_type,
            reason=reason,
            start_time=now,
            end_time=end_time,
            duration=duration,
            scope=scope,
            source_id=source_id,
            issued_by=issued_by,
        )
        self.store.put(PUNISHMENTS, punishment.punishment_id, punishment)

        self._log_audit(
            action="ISSUE_PUNISHMENT",
            actor_id=issued_by or "SYSTEM",
            target_id=user_id,
            details={"punishment_type": punishment_type.value, "duration": duration,
                     "source_id": source_id}
        )
        logger.info(f"Punishment issued: {punishment_type.value} to {user_id}")
        return punishment

    def ban_user(self, user_id: str, duration: Optional[str], reason: str,
                 source_id: Optional[str] = None, issued_by: Optional[str] = None) -> Punishment:
        punishment_type = PunishmentType.PERMANENT_BAN if parse_duration(duration) is None \
            else PunishmentType.TEMPORARY_BAN
        return self.issue_punishment(user_id, punishment_type, reason, duration=duration,
                                     source_id=source_id, issued_by=issued_by)

    def restrict_user(self, user_id: str, duration: str, reason: str,
                      source_id: Optional[str] = None, issued_by: Optional[str] = None) -> Punishment:
        return self.issue_punishment(user_id, PunishmentType.RESTRICTION, reason, duration=duration,
                                     source_id=source_id, issued_by=issued_by)

    def warn_user(self, user_id: str, reason: str, source_id: Optional[str] = None,
                  issued_by: Optional[str] = None) -> Punishment:
        return self.issue_punishment(user_id, PunishmentType.WARNING, reason,
                                     source_id=source_id, issued_by=issued_by)

    def revoke_punishments(
        self,
        user_id: str,
        revoked_by: str,
        reason: str,
        source_id: Optional[str] = None,
        types: Optional[List[PunishmentType]] = None
    ) -> List[Punishment]:
        """撤销用户处罚（可按来源 / 类型过滤）"""
        filters: Dict[str, Any] = {"user_id": user_id, "is_active": True}
        if source_id:
            filters["source_id"] = source_id
        if types:
            filters["punishment_type"] = [PunishmentType(t).value for t in types]

        revoked = []
        with self._lock:
            for punishment in self.store.find(PUNISHMENTS, **filters):
                punishment.is_active = False
                punishment.revoked_reason = reason
                self.store.put(PUNISHMENTS, punishment.punishment_id, punishment)
                revoked.append(punishment)

        if revoked:
            self._log_audit(
                action="REVOKE_PUNISHMENT",
                actor_id=revoked_by,
                target_id=user_id,
                details={"reason": reason, "count": len(revoked), "source_id": source_id}
            )
        return revoked

    def remove_restrictions(self, user_id: str, revoked_by: str, reason: str) -> List[Punishment]:
        """解除临时限制与临时封禁"""
        return self.revoke_punishments(
            user_id, revoked_by, reason,
            types=[PunishmentType.RESTRICTION, PunishmentType.TEMPORARY_BAN]
        )

    def get_user_punishments(self, user_id: str, active_only: bool = False) -> List[Punishment]:
        now = self.clock()
        results = [
            p for p in self.store.find(PUNISHMENTS, user_id=user_id)
            if not active_only or p.in_effect(now)
        ]
        results.sort(key=lambda p: p.start_time, reverse=True)
        return results

    def is_banned(self, user_id: str) -> bool:
        return any(
            p.punishment_type in (PunishmentType.TEMPORARY_BAN, PunishmentType.PERMANENT_BAN)
            for p in self.get_user_punishments(user_id, active_only=True)
        )

    def is_restricted(self, user_id: str) -> bool:
        return any(
            p.punishment_type == PunishmentType.RESTRICTION
            for p in self.get_user_punishments(user_id, active_only=True)
        )

    # =========================================================================
    # Monitoring
    # =========================================================================
    def _set_monitoring(self, user_id: str, kind: MonitoringKind, days: int, reason: str):
        entry = MonitoringEntry(user_id=user_id, kind=kind,
                                expires_at=self.clock() + timedelta(days=days), reason=reason)
        self.store.put(USER_MONITORING, entry.entry_id, entry)

    def _is_monitored_as(self, user_id: str, kind: MonitoringKind) -> bool:
        entry = self.store.get(USER_MONITORING, f"{kind.value}:{user_id}")
        return entry is not None and self.clock() < entry.expires_at

    def add_to_watch_list(self, user_id: str, days: int, reason: str):
        self._set_monitoring(user_id, MonitoringKind.WATCH_LIST, days, reason)
        self._log_audit("WATCH_LIST", "SYSTEM", user_id, {"days": days, "reason": reason})
        logger.info(f"Adding user {user_id} to watch list for {days} days")

    def increase_monitoring(self, user_id: str, days: int, reason: str):
        self._set_monitoring(user_id, MonitoringKind.MONITORING, days, reason)
        self._log_audit("INCREASE_MONITORING", "SYSTEM", user_id, {"days": days, "reason": reason})
        logger.info(f"Increasing monitoring for user {user_id} for {days} days")

    def is_watched(self, user_id: str) -> bool:
        return self._is_monitored_as(user_id, MonitoringKind.WATCH_LIST)

    def is_monitored(self, user_id: str) -> bool:
        return self._is_monitored_as(user_id, MonitoringKind.MONITORING)

    def request_additional_data(self, user_id: str, reason: str) -> DataRequest:
        request = DataRequest(request_id=str(uuid.uuid4()), user_id=user_id, reason=reason,
                              requested_at=self.clock())
        self.store.put(DATA_REQUESTS, request.request_id, request)
        logger.info(f"Additional data collection requested for {user_id}")
        return request

    def get_data_requests(self, user_id: str) -> List[DataRequest]:
        return self.store.find(DATA_REQUESTS, user_id=user_id)

    # =========================================================================
    # Results
    # =========================================================================
    def invalidate_results(self, user_id: str, scope: str, source_id: str,
                           issued_by: Optional[str] = None) -> Punishment:
        """作弊成绩作废（scope: session / puzzle / all）"""
        self.store.put(INVALIDATIONS, source_id, ResultInvalidation(
            source_id=source_id, user_id=user_id, scope=scope, invalidated_at=self.clock()
        ))
        return self.issue_punishment(user_id, PunishmentType.RESULT_INVALIDATION,
                                     f"Results invalidated ({scope})",
                                     source_id=source_id, issued_by=issued_by, scope=scope)

    def get_invalidation(self, source_id: str) -> Optional[ResultInvalidation]:
        return self.store.get(INVALIDATIONS, source_id)

    def restore_results(self, user_id: str, source_id: str, partial: bool = False):
        invalidation = self.get_invalidation(source_id)
        if invalidation is None or invalidation.user_id != user_id:
            logger.info(f"No invalidated results to restore for {user_id} ({source_id})")
            return
        invalidation.restored = "partial" if partial else "full"
        self.store.put(INVALIDATIONS, source_id, invalidation)
        if not partial:
            self.revoke_punishments(user_id, "SYSTEM", "Results restored", source_id=source_id,
                                    types=[PunishmentType.RESULT_INVALIDATION])
        self._log_audit("RESTORE_RESULTS", "SYSTEM", user_id,
                        {"source_id": source_id, "partial": partial})

    def clear_record(self, user_id: str, source_id: str):
        """撤销该来源的全部处罚并从记录中清除"""
        self.revoke_punishments(user_id, "SYSTEM", "Record cleared", source_id=source_id)
        self._log_audit("CLEAR_RECORD", "SYSTEM", user_id, {"source_id": source_id})

    def issue_compensation(self, user_id: str, source_id: str, description: str) -> Compensation:
        compensation = Compensation(
            compensation_id=str(uuid.uuid4()),
            user_id=user_id,
            source_id=source_id,
            description=description,
            issued_at=self.clock(),
        )
        self.store.put(COMPENSATIONS, compensation.compensation_id, compensation)
        self._log_audit("COMPENSATION", "SYSTEM", user_id, {"source_id": source_id})
        logger.info(f"Compensation issued to {user_id}")
        return compensation

    def get_compensations(self, user_id: str) -> List[Compensation]:
        return sorted(self.store.find(COMPENSATIONS, user_id=user_id), key=lambda c: c.issued_at)

    # =========================================================================
    # Audit
    # =========================================================================
    def _log_audit(self, action: str, actor_id: str, target_id: str,
                   details: Optional[Dict[str, Any]] = None):
        """记录审计日志"""
        with self._lock:
            log = AuditLog(
                log_id=str(uuid.uuid4()),
                action=action,
                actor_id=actor_id,
                target_id=target_id,
                timestamp=self.clock(),
                details=details or {},
                sequence=self.store.count(AUDIT_LOGS),
            )
            self.store.put(AUDIT_LOGS, log.log_id, log)

    def get_audit_logs(self, action: Optional[str] = None, target_id: Optional[str] = None,
                       limit: int = 100) -> List[AuditLog]:
        """获取审计日志"""
        filters: Dict[str, Any] = {}
        if action:
            filters["action"] = action
        if target_id:
            filters["target_id"] = target_id
        results = self.store.find(AUDIT_LOGS, **filters)
        results.sort(key=lambda l: (l.timestamp, l.sequence), reverse=True)
        return results[:limit]

    def get_statistics(self) -> Dict[str, Any]:
        now = self.clock()
        punishments = self.store.find(PUNISHMENTS)
        active = [p for p in punishments if p.in_effect(now)]
        by_type: Dict[str, int] = {}
        for p in active:
            by_type[p.punishment_type.value] = by_type.get(p.punishment_type.value, 0) + 1
        entries = [e for e in self.store.find(USER_MONITORING) if now < e.expires_at]
        return {
            "total_punishments": len(punishments),
            "active_punishments": len(active),
            "active_by_type": by_type,
            "watch_list_size": sum(1 for e in entries if e.kind == MonitoringKind.WATCH_LIST),
            "monitored_users": sum(1 for e in entries if e.kind == MonitoringKind.MONITORING),
        }
