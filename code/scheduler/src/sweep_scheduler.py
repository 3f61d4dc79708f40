"""
PuzzleGuard Sweep Scheduler
定时清扫 - 超时案件升级与指标快照

The core never schedules itself: an external trigger (cron, admin route,
test) calls ``run_once`` with the time it considers "now".
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from analytics.src.analytics_service import AggregationPeriod, AnalyticsService
from review.src.case_manager import CaseManager

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """一次清扫的结果"""
    ran_at: datetime
    escalated_case_ids: List[str] = field(default_factory=list)
    snapshot: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ran_at": self.ran_at.isoformat(),
            "escalated_case_ids": list(self.escalated_case_ids),
            "snapshot": self.snapshot,
        }


class SweepScheduler:
    """清扫调度器"""

    def __init__(self, case_manager: CaseManager, analytics: AnalyticsService,
                 snapshot_period: AggregationPeriod = AggregationPeriod.DAILY):
        self.case_manager = case_manager
        self.analytics = analytics
        self.snapshot_period = snapshot_period
        self.history: List[SweepResult] = []

    def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self.case_manager.clock()
        escalated = self.case_manager.escalate_overdue(now)
        snapshot = self.analytics.snapshot(now, self.snapshot_period)

        result = SweepResult(
            ran_at=now,
            escalated_case_ids=list(escalated),
            snapshot=snapshot.to_dict(),
        )
        self.history.append(result)
        logger.info(f"Sweep at {now.isoformat()}: escalated={len(escalated)}")
        return result
