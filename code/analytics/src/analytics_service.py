"""
PuzzleGuard Analytics
反作弊数据分析 - 指标事件收集、准确率统计、周期快照

核心功能:
1. 事件收集 (Event Collection) - 作为 MetricsSink 接收不可变事件
2. 准确率指标 (Accuracy Metrics) - 检出率、误报率、漏报率
3. 周期快照 (Metric Snapshots) - 由外部定时触发
4. 事件计数 (Event Counts)
"""
import logging
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from kernel.src.errors import ValidationFailure
from kernel.src.ports import Clock, MetricEvent, utc_now
from kernel.src.repository import METRIC_EVENTS, METRIC_SNAPSHOTS, InMemoryStore, RecordStore, load_time

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================
class MetricKind(str, Enum):
    """指标事件类型"""
    SUBMISSION = "submission"
    CHEAT_DETECTION = "cheat_detection"
    FALSE_POSITIVE = "false_positive"
    FALSE_NEGATIVE = "false_negative"
    CASE_CREATED = "case_created"
    CASE_COMPLETED = "case_completed"
    REPORT_SUBMITTED = "report_submitted"


class AggregationPeriod(str, Enum):
    """聚合周期"""
    HOURLY = "hour"
    DAILY = "day"
    WEEKLY = "week"
    MONTHLY = "month"

    @property
    def span(self) -> timedelta:
        return {
            "hour": timedelta(hours=1),
            "day": timedelta(days=1),
            "week": timedelta(days=7),
            "month": timedelta(days=30),
        }[self.value]


# =============================================================================
# Data Classes
# =============================================================================
@dataclass(frozen=True)
class AccuracyMetrics:
    """准确率指标"""
    total_submissions: int
    cheat_detections: int
    false_positives: int
    false_negatives: int
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def detection_rate(self) -> float:
        return self.cheat_detections / self.total_submissions if self.total_submissions else 0.0

    @property
    def false_positive_rate(self) -> float:
        return self.false_positives / self.cheat_detections if self.cheat_detections else 0.0

    @property
    def false_negative_rate(self) -> float:
        return self.false_negatives / self.cheat_detections if self.cheat_detections else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_submissions": self.total_submissions,
            "cheat_detections": self.cheat_detections,
            "false_positives": self.false_positives,
            "false_negatives": self.false_negatives,
            "detection_rate": self.detection_rate,
            "false_positive_rate": self.false_positive_rate,
            "false_negative_rate": self.false_negative_rate,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccuracyMetrics":
        return cls(
            total_submissions=int(data.get("total_submissions", 0)),
            cheat_detections=int(data.get("cheat_detections", 0)),
            false_positives=int(data.get("false_positives", 0)),
            false_negatives=int(data.get("false_negatives", 0)),
            period_start=load_time(data.get("period_start")),
            period_end=load_time(data.get("period_end")),
        )


@dataclass(frozen=True)
class MetricSnapshot:
    """指标快照"""
    taken_at: datetime
    period: AggregationPeriod
    accuracy: AccuracyMetrics
    event_counts: Dict[str, int] = field(default_factory=dict)
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taken_at": self.taken_at.isoformat(),
            "period": self.period.value,
            "accuracy": self.accuracy.to_dict(),
            "event_counts": dict(self.event_counts),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricSnapshot":
        return cls(
            taken_at=load_time(data["taken_at"]),
            period=AggregationPeriod(data["period"]),
            accuracy=AccuracyMetrics.from_dict(data["accuracy"]),
            event_counts=dict(data.get("event_counts") or {}),
            sequence=int(data.get("sequence", 0)),
        )


@dataclass(frozen=True)
class MetricRecord:
    """持久化的指标事件（sequence 保证同一时刻事件的先后顺序）"""
    record_id: str
    sequence: int
    event: MetricEvent

    def to_dict(self) -> Dict[str, Any]:
        data = self.event.to_dict()
        data.update({"record_id": self.record_id, "sequence": self.sequence})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricRecord":
        return cls(
            record_id=data["record_id"],
            sequence=int(data.get("sequence", 0)),
            event=MetricEvent.from_dict(data),
        )


# =============================================================================
# Analytics Service
# =============================================================================
class AnalyticsService:
    """反作弊分析服务（同时是 MetricsSink，事件与快照经 RecordStore 持久化）"""

    def __init__(self, clock: Optional[Clock] = None, store: Optional[RecordStore] = None):
        self.clock = clock or utc_now
        self.store = store or InMemoryStore()
        self.store.register(METRIC_EVENTS, MetricRecord)
        self.store.register(METRIC_SNAPSHOTS, MetricSnapshot)
        self._lock = threading.Lock()

        logger.info("AnalyticsService initialized")

    @property
    def events(self) -> List[MetricEvent]:
        """按发生时间排序的全部事件"""
        records = sorted(self.store.find(METRIC_EVENTS),
                         key=lambda r: (r.event.occurred_at, r.sequence))
        return [r.event for r in records]

    @property
    def snapshots(self) -> List[MetricSnapshot]:
        return sorted(self.store.find(METRIC_SNAPSHOTS), key=lambda s: s.sequence)

    # =========================================================================
    # Event Collection
    # =========================================================================
    def emit(self, event: MetricEvent) -> None:
        with self._lock:
            record = MetricRecord(record_id=str(uuid.uuid4()),
                                  sequence=self.store.count(METRIC_EVENTS), event=event)
            self.store.put(METRIC_EVENTS, record.record_id, record)
        logger.debug(f"Metric event recorded: {event.kind}")

    def _events_between(self, start: Optional[datetime], end: Optional[datetime],
                        kind: Optional[str] = None) -> List[MetricEvent]:
        filters = {"kind": kind} if kind else {}
        events = [r.event for r in self.store.find(METRIC_EVENTS, **filters)]
        return [
            e for e in events
            if (start is None or e.occurred_at >= start) and (end is None or e.occurred_at < end)
        ]

    # =========================================================================
    # Metrics
    # =========================================================================
    def get_accuracy_metrics(self, start: Optional[datetime] = None,
                             end: Optional[datetime] = None) -> AccuracyMetrics:
        """
        检测准确率

        Rates are 0 when their denominator is 0.
        """
        counts = Counter(e.kind for e in self._events_between(start, end))
        return AccuracyMetrics(
            total_submissions=counts[MetricKind.SUBMISSION.value],
            cheat_detections=counts[MetricKind.CHEAT_DETECTION.value],
            false_positives=counts[MetricKind.FALSE_POSITIVE.value],
            false_negatives=counts[MetricKind.FALSE_NEGATIVE.value],
            period_start=start,
            period_end=end,
        )

    def get_event_counts(self, period: str = "day") -> Dict[str, int]:
        try:
            span = AggregationPeriod(period).span
        except ValueError:
            raise ValidationFailure("invalid_period", f"Unknown period: {period}",
                                    {"allowed": [p.value for p in AggregationPeriod]})
        start = self.clock() - span
        return dict(Counter(e.kind for e in self._events_between(start, None)))

    def get_false_positive_flags(self) -> Dict[str, int]:
        """误报事件按标记分布"""
        counts: Counter = Counter()
        for e in self._events_between(None, None, kind=MetricKind.FALSE_POSITIVE.value):
            counts.update(e.attributes.get("flags", []))
        return dict(counts)

    # =========================================================================
    # Snapshots
    # =========================================================================
    def snapshot(self, now: Optional[datetime] = None,
                 period: AggregationPeriod = AggregationPeriod.DAILY) -> MetricSnapshot:
        now = now or self.clock()
        period = AggregationPeriod(period)
        start = now - period.span
        with self._lock:
            snap = MetricSnapshot(
                taken_at=now,
                period=period,
                accuracy=self.get_accuracy_metrics(start, now),
                event_counts=dict(Counter(e.kind for e in self._events_between(start, now))),
                sequence=self.store.count(METRIC_SNAPSHOTS),
            )
            self.store.put(METRIC_SNAPSHOTS, str(uuid.uuid4()), snap)
        logger.info(
            f"Metric snapshot taken: detection_rate={snap.accuracy.detection_rate:.3f}, "
            f"false_positive_rate={snap.accuracy.false_positive_rate:.3f}"
        )
        return snap

    def latest_snapshot(self) -> Optional[MetricSnapshot]:
        snapshots = self.snapshots
        return snapshots[-1] if snapshots else None

    def get_dashboard(self) -> Dict[str, Any]:
        latest = self.latest_snapshot()
        return {
            "generated_at": self.clock().isoformat(),
            "accuracy": self.get_accuracy_metrics().to_dict(),
            "last_24h": self.get_event_counts("day"),
            "latest_snapshot": latest.to_dict() if latest else None,
        }
