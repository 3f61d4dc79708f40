"""
PuzzleGuard Trust & Safety Service
信任与安全门面 - 组装各子服务，提供提交验证流水线

核心功能:
1. 提交验证 (Validate Solution) - 证据收集 -> 检测 -> 持久化 -> 建案
2. 服务组装 (Wiring) - 审核、申诉、社区、处罚、分析共享同一存储与时钟
3. 检测查询 (Detection Queries)
"""
import logging
from typing import Any, Dict, List, Optional

from config.service_registry import get_service, TRUST_SAFETY_SERVICE
from config.settings import DEFAULT_REPUTATION, MODERATION_CONFIG, REVIEW_CONFIG, STORE_BACKEND
from kernel.src.errors import NotFoundError
from kernel.src.ports import (
    Clock, LoggingNotificationSink, InMemoryReputationSource, MetricEvent,
    NotificationSink, ReputationSource, fire_and_forget, utc_now
)
from kernel.src.repository import DETECTIONS, MODERATORS, InMemoryStore, RecordStore
from evidence.src.evidence_collector import EvidenceCollector
from detection.src.detection_engine import (
    BaselineTracker, DetectionEngine, DetectionFeedbackRecorder, DetectionResult
)
from review.src.reviewer_pool import ReviewerPool
from review.src.case_manager import CaseManager
from appeal.src.appeal_manager import AppealManager
from community.src.community_moderation import CommunityModeration
from safety.src.enforcement_service import EnforcementService
from analytics.src.analytics_service import AnalyticsService
from scheduler.src.sweep_scheduler import SweepScheduler

logger = logging.getLogger(__name__)


class TrustSafetyService:
    """信任与安全服务门面"""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        clock: Optional[Clock] = None,
        notifications: Optional[NotificationSink] = None,
        reputation: Optional[ReputationSource] = None,
        detection_config: Optional[Dict[str, Any]] = None,
        review_config: Optional[Dict[str, Any]] = None,
        appeal_config: Optional[Dict[str, Any]] = None,
        moderation_config: Optional[Dict[str, Any]] = None
    ):
        self.store = store or InMemoryStore()
        self.store.register(DETECTIONS, DetectionResult)
        self.clock = clock or utc_now
        self.notifications = notifications or LoggingNotificationSink()
        self.reputation = reputation or InMemoryReputationSource(default_reputation=DEFAULT_REPUTATION)

        self.reviewers = ReviewerPool(default_max_load=REVIEW_CONFIG["max_cases_per_reviewer"],
                                      store=self.store)
        self.moderators = ReviewerPool(default_max_load=MODERATION_CONFIG["max_reports_per_moderator"],
                                       store=self.store, collection=MODERATORS)
        self.enforcement = EnforcementService(store=self.store, clock=self.clock)
        self.analytics = AnalyticsService(clock=self.clock, store=self.store)
        self.feedback = DetectionFeedbackRecorder(store=self.store, clock=self.clock)
        self.baselines = BaselineTracker(store=self.store)

        self.collector = EvidenceCollector()
        self.engine = DetectionEngine(config=detection_config)
        self.cases = CaseManager(
            self.store, self.reviewers,
            enforcement=self.enforcement,
            notifications=self.notifications,
            feedback=self.feedback,
            metrics=self.analytics,
            clock=self.clock,
            config=review_config,
        )
        self.appeals = AppealManager(
            self.store, self.cases,
            reviewers=self.reviewers,
            enforcement=self.enforcement,
            notifications=self.notifications,
            feedback=self.feedback,
            metrics=self.analytics,
            clock=self.clock,
            config=appeal_config,
        )
        self.community = CommunityModeration(
            self.store,
            moderators=self.moderators,
            reputation=self.reputation,
            enforcement=self.enforcement,
            case_opener=self.cases.open_case_from_report,
            notifications=self.notifications,
            metrics=self.analytics,
            clock=self.clock,
            config=moderation_config,
        )
        self.sweeper = SweepScheduler(self.cases, self.analytics)

        logger.info("TrustSafetyService initialized")

    # =========================================================================
    # Validation Pipeline
    # =========================================================================
    def validate_solution(self, user_id: str, session_id: str,
                          telemetry: Dict[str, Any]) -> Dict[str, Any]:
        """
        验证一次解题提交

        Evidence is collected and scored, the detection is stored, and a
        flagged submission opens (or reinforces) a review case. Unflagged
        submissions feed the user's timing baseline instead.
        """
        evidence = self.collector.collect(user_id, session_id, telemetry)
        detection = self.engine.evaluate(evidence, self.baselines.get_baseline(user_id))
        detection.detected_at = self.clock()
        self.store.put(DETECTIONS, detection.detection_id, detection)

        self._emit("submission", user_id, detection.detection_id)

        case = None
        if detection.is_flagged:
            self._emit("cheat_detection", user_id, detection.detection_id,
                       {"severity": detection.severity.value,
                        "flags": sorted(f.value for f in detection.flags)})
            case = self.cases.create_case(detection)
            logger.warning(
                f"Submission by {user_id} flagged ({detection.severity.value}), case {case.case_id}"
            )
        else:
            self.baselines.update(evidence)

        return {
            "valid": not detection.is_flagged,
            "detection": detection.to_dict(),
            "case_id": case.case_id if case else None,
            "recommendations": list(detection.recommendations),
        }

    def _emit(self, kind: str, user_id: str, subject_id: str,
              attributes: Optional[Dict[str, Any]] = None):
        fire_and_forget(f"metrics.{kind}", self.analytics.emit, MetricEvent(
            kind=kind, occurred_at=self.clock(), user_id=user_id,
            subject_id=subject_id, attributes=attributes or {}
        ))

    # =========================================================================
    # Queries
    # =========================================================================
    def get_detection(self, detection_id: str) -> DetectionResult:
        detection = self.store.get(DETECTIONS, detection_id)
        if detection is None:
            raise NotFoundError("detection_not_found", f"Detection {detection_id} not found")
        return detection

    def list_detections(self, user_id: Optional[str] = None,
                        flagged_only: bool = False) -> List[DetectionResult]:
        filters = {"user_id": user_id} if user_id else {}
        detections = self.store.find(DETECTIONS, **filters)
        if flagged_only:
            detections = [d for d in detections if d.is_flagged]
        return sorted(detections, key=lambda d: d.detected_at, reverse=True)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "detections": self.store.count(DETECTIONS),
            "flagged_detections": self.store.count(DETECTIONS, predicate=lambda d: d.is_flagged),
            "cases": self.cases.get_statistics(),
            "appeals": self.appeals.get_statistics(),
            "enforcement": self.enforcement.get_statistics(),
            "accuracy": self.analytics.get_accuracy_metrics().to_dict(),
        }


def create_trust_safety_service() -> TrustSafetyService:
    """按 STORE_BACKEND 选择存储后端"""
    if STORE_BACKEND == "sql":
        from kernel.src.db_session import get_db_manager
        from kernel.src.repository_db import SqlStore
        logger.info("Using SQL record store")
        return TrustSafetyService(store=SqlStore(get_db_manager()))
    return TrustSafetyService()


def get_trust_safety_service() -> TrustSafetyService:
    """进程级单例（测试可通过 register_service 注入）"""
    return get_service(TRUST_SAFETY_SERVICE, create_trust_safety_service)
