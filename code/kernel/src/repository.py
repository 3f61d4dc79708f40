"""
PuzzleGuard Record Store
持久化端口 - 按集合名做点查、写入、过滤查询与计数

Records cross this boundary as versioned dicts (``to_dict`` / ``from_dict``),
so a caller that fails before ``put`` leaves no partial state behind.
"""
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger(__name__)


# 集合名常量
DETECTIONS = "detections"
CASES = "review_cases"
APPEALS = "appeals"
REPORTS = "community_reports"
VOTES = "report_votes"
REVIEWERS = "reviewers"
MODERATORS = "moderators"
PUNISHMENTS = "punishments"
USER_MONITORING = "user_monitoring"
INVALIDATIONS = "result_invalidations"
COMPENSATIONS = "compensations"
DATA_REQUESTS = "data_requests"
AUDIT_LOGS = "audit_logs"
BASELINES = "user_baselines"
DETECTION_FEEDBACK = "detection_feedback"
METRIC_EVENTS = "metric_events"
METRIC_SNAPSHOTS = "metric_snapshots"


def dump_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def load_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize(v) for v in value]
    return value


def payload_matches(payload: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """过滤条件：标量为相等匹配，列表/集合为成员匹配"""
    for key, expected in filters.items():
        actual = payload.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in _normalize(expected):
                return False
        elif actual != _normalize(expected):
            return False
    return True


class RecordStore:
    """存储基类：维护集合到记录类型的映射"""

    def __init__(self):
        self._record_types: Dict[str, Type] = {}

    def register(self, collection: str, record_cls: Type):
        self._record_types[collection] = record_cls

    def _decode(self, collection: str, payload: Dict[str, Any]):
        record_cls = self._record_types.get(collection)
        if record_cls is None:
            raise KeyError(f"Collection {collection} has no registered record type")
        return record_cls.from_dict(payload)

    # 子类实现
    def get(self, collection: str, record_id: str):
        raise NotImplementedError

    def put(self, collection: str, record_id: str, record) -> None:
        raise NotImplementedError

    def find(self, collection: str, **filters) -> List[Any]:
        raise NotImplementedError

    def count(self, collection: str, predicate: Optional[Callable[[Any], bool]] = None,
              **filters) -> int:
        records = self.find(collection, **filters)
        if predicate is None:
            return len(records)
        return sum(1 for r in records if predicate(r))


class InMemoryStore(RecordStore):
    """内存存储（测试与单进程部署）"""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def get(self, collection: str, record_id: str):
        with self._lock:
            payload = self._data.get(collection, {}).get(record_id)
        if payload is None:
            return None
        return self._decode(collection, payload)

    def put(self, collection: str, record_id: str, record) -> None:
        payload = record.to_dict()
        with self._lock:
            self._data.setdefault(collection, {})[record_id] = payload

    def find(self, collection: str, **filters) -> List[Any]:
        with self._lock:
            payloads = list(self._data.get(collection, {}).values())
        return [
            self._decode(collection, p) for p in payloads
            if payload_matches(p, filters)
        ]
