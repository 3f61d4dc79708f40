"""
PuzzleGuard Ports
外部协作者接口 - 通知、信誉、检测反馈、指标

Side effects sent through these ports are best-effort: callers wrap them with
``fire_and_forget`` so a failing collaborator never blocks a state transition.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


# =============================================================================
# Metric Events
# =============================================================================
@dataclass(frozen=True)
class MetricEvent:
    """不可变指标事件"""
    kind: str
    occurred_at: datetime
    user_id: Optional[str] = None
    subject_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "occurred_at": self.occurred_at.isoformat(),
            "user_id": self.user_id,
            "subject_id": self.subject_id,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricEvent":
        return cls(
            kind=data["kind"],
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            user_id=data.get("user_id"),
            subject_id=data.get("subject_id"),
            attributes=dict(data.get("attributes") or {}),
        )


# =============================================================================
# Port Interfaces
# =============================================================================
class NotificationSink(Protocol):
    def notify(self, recipient_id: str, topic: str, payload: Dict[str, Any]) -> None:
        ...


class ReputationSource(Protocol):
    def get_reputation(self, user_id: str) -> float:
        ...

    def get_abuse_score(self, user_id: str) -> float:
        ...

    def adjust_reputation(self, user_id: str, delta: float, reason: str) -> None:
        ...


class DetectionFeedback(Protocol):
    def record_feedback(self, user_id: str, subject_id: str, signal: str,
                        flags: List[str]) -> None:
        ...


class MetricsSink(Protocol):
    def emit(self, event: MetricEvent) -> None:
        ...


# =============================================================================
# Default Implementations
# =============================================================================
class LoggingNotificationSink:
    """只写日志的通知实现（真实投递由外部系统负责）"""

    def notify(self, recipient_id: str, topic: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notify {recipient_id}: {topic}")


class InMemoryNotificationSink:
    """记录所有通知，测试用"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, recipient_id: str, topic: str, payload: Dict[str, Any]) -> None:
        self.sent.append({"recipient_id": recipient_id, "topic": topic, "payload": payload})

    def topics_for(self, recipient_id: str) -> List[str]:
        return [n["topic"] for n in self.sent if n["recipient_id"] == recipient_id]


class InMemoryReputationSource:
    """用户信誉表"""

    def __init__(self, default_reputation: float = 0.0,
                 reputations: Optional[Dict[str, float]] = None,
                 abuse_scores: Optional[Dict[str, float]] = None):
        self.default_reputation = default_reputation
        self.reputations: Dict[str, float] = dict(reputations or {})
        self.abuse_scores: Dict[str, float] = dict(abuse_scores or {})
        self.adjustments: List[Dict[str, Any]] = []

    def get_reputation(self, user_id: str) -> float:
        return self.reputations.get(user_id, self.default_reputation)

    def get_abuse_score(self, user_id: str) -> float:
        return self.abuse_scores.get(user_id, 0.0)

    def adjust_reputation(self, user_id: str, delta: float, reason: str) -> None:
        self.reputations[user_id] = self.get_reputation(user_id) + delta
        self.adjustments.append({"user_id": user_id, "delta": delta, "reason": reason})


class NullMetricsSink:
    def emit(self, event: MetricEvent) -> None:
        logger.debug(f"Metric event dropped: {event.kind}")


def fire_and_forget(action: str, func: Callable, *args, **kwargs) -> bool:
    """
    执行副作用；失败只记录日志，不影响已提交的状态转换

    Returns:
        是否成功
    """
    try:
        func(*args, **kwargs)
        return True
    except Exception:
        logger.exception(f"Side effect failed: {action}")
        return False
