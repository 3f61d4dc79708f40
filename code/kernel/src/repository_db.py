"""
PuzzleGuard Record Store (Database Version)
持久化端口 - 数据库版本

Each collection lifts up to three payload fields into the indexed ``user_id``,
``status`` and ``related_id`` columns. ``find`` narrows the query on those
columns first and then applies the full payload filter to what comes back.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from kernel.src.db_session import DatabaseManager
from kernel.src.models import RecordModel
from kernel.src.repository import (
    APPEALS, AUDIT_LOGS, CASES, COMPENSATIONS, DETECTIONS, DETECTION_FEEDBACK, INVALIDATIONS,
    METRIC_EVENTS, MODERATORS, PUNISHMENTS, REPORTS, REVIEWERS, USER_MONITORING, VOTES,
    RecordStore, payload_matches, _normalize
)

logger = logging.getLogger(__name__)

# 索引列 -> 负载字段
_DEFAULT_INDEX_KEYS = {"user_id": "user_id", "status": "status"}

_INDEX_KEYS: Dict[str, Dict[str, str]] = {
    DETECTIONS: {"user_id": "user_id", "related_id": "session_id"},
    CASES: {"user_id": "user_id", "status": "status", "related_id": "assigned_reviewer"},
    APPEALS: {"user_id": "user_id", "status": "status", "related_id": "assigned_reviewer"},
    REPORTS: {"user_id": "reported_user_id", "status": "status", "related_id": "reporter_user_id"},
    VOTES: {"user_id": "voter_id", "related_id": "report_id"},
    REVIEWERS: {"user_id": "reviewer_id", "status": "tier"},
    MODERATORS: {"user_id": "reviewer_id", "status": "tier"},
    PUNISHMENTS: {"user_id": "user_id", "status": "punishment_type", "related_id": "source_id"},
    USER_MONITORING: {"user_id": "user_id", "status": "kind"},
    INVALIDATIONS: {"user_id": "user_id", "status": "restored", "related_id": "source_id"},
    COMPENSATIONS: {"user_id": "user_id", "related_id": "source_id"},
    AUDIT_LOGS: {"user_id": "target_id", "status": "action", "related_id": "actor_id"},
    DETECTION_FEEDBACK: {"user_id": "user_id", "status": "signal", "related_id": "subject_id"},
    METRIC_EVENTS: {"user_id": "user_id", "status": "kind", "related_id": "subject_id"},
}

_COLUMNS = {
    "user_id": RecordModel.user_id,
    "status": RecordModel.status,
    "related_id": RecordModel.related_id,
}


def index_keys(collection: str) -> Dict[str, str]:
    return _INDEX_KEYS.get(collection, _DEFAULT_INDEX_KEYS)


def _column_value(payload: Dict[str, Any], key: Optional[str]) -> Optional[str]:
    if key is None:
        return None
    value = _normalize(payload.get(key))
    return str(value) if value is not None else None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # 数据库列存 naive UTC
    return datetime.fromisoformat(value).replace(tzinfo=None)


class SqlStore(RecordStore):
    """SQLAlchemy 存储实现"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__()
        self.db_manager = db_manager

    def get(self, collection: str, record_id: str):
        with self.db_manager.session_scope() as session:
            model = session.get(RecordModel, (collection, record_id))
            payload = dict(model.payload) if model else None
        if payload is None:
            return None
        return self._decode(collection, payload)

    def put(self, collection: str, record_id: str, record) -> None:
        payload = record.to_dict()
        keys = index_keys(collection)
        with self.db_manager.session_scope() as session:
            session.merge(RecordModel(
                collection=collection,
                record_id=record_id,
                user_id=_column_value(payload, keys.get("user_id")),
                status=_column_value(payload, keys.get("status")),
                related_id=_column_value(payload, keys.get("related_id")),
                schema_version=payload.get("schema_version", 1),
                created_at=_parse_time(payload.get("created_at")),
                payload=payload,
            ))
        logger.debug(f"Persisted {collection}/{record_id}")

    def find(self, collection: str, **filters) -> List[Any]:
        with self.db_manager.session_scope() as session:
            query = session.query(RecordModel).filter(RecordModel.collection == collection)
            for column_name, key in index_keys(collection).items():
                expected = filters.get(key)
                if expected is None:
                    continue
                column = _COLUMNS[column_name]
                if isinstance(expected, (list, tuple, set, frozenset)):
                    values = [str(v) for v in _normalize(expected) if v is not None]
                    query = query.filter(column.in_(values))
                else:
                    query = query.filter(column == str(_normalize(expected)))
            payloads = [dict(m.payload) for m in query.all()]
        return [
            self._decode(collection, p) for p in payloads
            if payload_matches(p, filters)
        ]
