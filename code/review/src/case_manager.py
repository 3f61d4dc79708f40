"""
PuzzleGuard Case Manager
人工审核案件管理 - 工作流状态机、分配、复核、升级

核心功能:
1. 案件创建与去重 (Case Creation)
2. 审核员分配 (Reviewer Assignment)
3. 审核分析与决定 (Review Analysis & Decision)
4. 复核与升级 (Additional Review & Escalation)
5. 决定执行 (Decision Execution)

状态流转:
    pending -> assigned -> in_review -> {completed | escalated | pending_additional_review}
    pending_additional_review / escalated 重新进入分配（通常更高等级）
    终态: completed, withdrawn, archived
"""
import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from config.settings import RECORD_SCHEMA_VERSION, REVIEW_CONFIG
from detection.src.detection_engine import (
    CRITICAL_FLAGS, CheatFlag, DetectionResult, Severity
)
from evidence.src.evidence_collector import EvidenceBundle
from kernel.src.errors import (
    CapacityExceeded, EligibilityDenied, InvalidStateError, NotFoundError, ValidationFailure
)
from kernel.src.ports import (
    Clock, DetectionFeedback, MetricEvent, MetricsSink, NotificationSink,
    LoggingNotificationSink, NullMetricsSink, fire_and_forget, utc_now
)
from kernel.src.repository import CASES, RecordStore, dump_time, load_time
from review.src.reviewer_pool import ReviewerPool, Tier
from safety.src.enforcement_service import EnforcementService, parse_duration

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================
class CaseStatus(str, Enum):
    """案件状态"""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    PENDING_ADDITIONAL_REVIEW = "pending_additional_review"
    WITHDRAWN = "withdrawn"
    ARCHIVED = "archived"


class CasePriority(str, Enum):
    """案件优先级"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high", "urgent"].index(self.value)


class Verdict(str, Enum):
    """审核结论"""
    LEGITIMATE = "legitimate"
    SUSPICIOUS = "suspicious"
    CONFIRMED_CHEAT = "confirmed_cheat"
    INCONCLUSIVE = "inconclusive"


class RecommendedAction(str, Enum):
    BAN = "ban"
    INVALIDATE_RESULTS = "invalidate_results"
    WARNING = "warning"
    INCREASE_MONITORING = "increase_monitoring"
    CLEAR_RESTRICTIONS = "clear_restrictions"
    WATCH_LIST = "watch_list"
    REQUEST_DATA = "request_data"
    NO_ACTION = "no_action"


class EscalationLevel(str, Enum):
    SENIOR = "senior"
    EXPERT = "expert"
    ADMIN = "admin"

    @property
    def tier(self) -> Tier:
        return Tier(self.value)


class CaseSource(str, Enum):
    DETECTION = "detection"
    COMMUNITY_REPORT = "community_report"


TERMINAL_STATUSES = frozenset({CaseStatus.COMPLETED, CaseStatus.WITHDRAWN, CaseStatus.ARCHIVED})

# 可分配的排队状态
QUEUED_STATUSES = frozenset({
    CaseStatus.PENDING, CaseStatus.PENDING_ADDITIONAL_REVIEW, CaseStatus.ESCALATED
})

OPEN_LOAD_STATUSES = frozenset({CaseStatus.ASSIGNED, CaseStatus.IN_REVIEW})

# 追加审核原因
LOW_CONFIDENCE = "Low confidence"
INCONCLUSIVE_VERDICT = "Inconclusive verdict"
CONFLICTING_REVIEWS = "Conflicting reviews"
CRITICAL_SECOND_REVIEW = "Critical case requires second review"

# 超过审核次数上限后，升级审核员的明确决定可以裁决这两类分歧
TIE_BREAKABLE_REASONS = frozenset({CONFLICTING_REVIEWS, CRITICAL_SECOND_REVIEW})

# 社区举报严重度对应的案件优先级
REPORT_SEVERITY_PRIORITY = {
    Severity.CRITICAL: CasePriority.URGENT,
    Severity.HIGH: CasePriority.HIGH,
    Severity.MEDIUM: CasePriority.MEDIUM,
    Severity.LOW: CasePriority.LOW,
}

ALLOWED_TRANSITIONS: Dict[CaseStatus, frozenset] = {
    CaseStatus.PENDING: frozenset({CaseStatus.ASSIGNED, CaseStatus.ESCALATED, CaseStatus.WITHDRAWN}),
    CaseStatus.ASSIGNED: frozenset({CaseStatus.IN_REVIEW, CaseStatus.ESCALATED, CaseStatus.WITHDRAWN}),
    CaseStatus.IN_REVIEW: frozenset({
        CaseStatus.COMPLETED, CaseStatus.ESCALATED,
        CaseStatus.PENDING_ADDITIONAL_REVIEW, CaseStatus.WITHDRAWN,
    }),
    CaseStatus.PENDING_ADDITIONAL_REVIEW: frozenset({
        CaseStatus.ASSIGNED, CaseStatus.ESCALATED, CaseStatus.PENDING, CaseStatus.WITHDRAWN,
    }),
    CaseStatus.ESCALATED: frozenset({
        CaseStatus.ASSIGNED, CaseStatus.ESCALATED, CaseStatus.PENDING, CaseStatus.WITHDRAWN,
    }),
    # 人工升级可从任何状态重新排队
    CaseStatus.COMPLETED: frozenset({CaseStatus.ARCHIVED, CaseStatus.ESCALATED}),
    CaseStatus.WITHDRAWN: frozenset({CaseStatus.ARCHIVED, CaseStatus.ESCALATED}),
    CaseStatus.ARCHIVED: frozenset({CaseStatus.ESCALATED}),
}

RISK_FACTOR_TEXT = {
    CheatFlag.SUPERHUMAN_TIMING: "Impossibly fast reaction times",
    CheatFlag.INHUMAN_CONSISTENCY: "Timing too consistent for a human",
    CheatFlag.PERFECT_SOLUTION: "Perfect solution without exploration",
    CheatFlag.TOO_OPTIMAL: "Nearly every move was optimal",
    CheatFlag.BOT_SIGNATURE: "Movement pattern matches known bots",
    CheatFlag.AUTOMATION_DETECTED: "Session shows automated play",
    CheatFlag.IMPOSSIBLE_IMPROVEMENT: "Skill jump far beyond user history",
    CheatFlag.REPETITIVE_PATTERNS: "Highly repetitive move patterns",
}


# =============================================================================
# Data Classes
# =============================================================================
@dataclass(frozen=True)
class WorkflowStep:
    """工作流步骤（不可变）"""
    name: str
    required_tier: Tier
    time_limit_hours: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "required_tier": self.required_tier.value,
            "time_limit_hours": self.time_limit_hours,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowStep":
        return cls(data["name"], Tier(data["required_tier"]), int(data["time_limit_hours"]))


@dataclass(frozen=True)
class ReviewWorkflow:
    """案件创建时按严重度一次性生成的步骤列表；进度由案件上的游标记录"""
    steps: Tuple[WorkflowStep, ...]
    escalation_timeout_hours: int

    @classmethod
    def for_severity(cls, severity: Severity, config: Dict[str, Any]) -> "ReviewWorkflow":
        steps = [WorkflowStep("Initial Review", Tier.REVIEWER, 24)]
        if severity.at_least(Severity.HIGH):
            steps.append(WorkflowStep("Secondary Review", Tier.SENIOR, 12))
        if severity == Severity.CRITICAL:
            steps.append(WorkflowStep("Expert Review", Tier.EXPERT, 8))
        timeouts = config["escalation_timeout_hours"]
        timeout = timeouts["critical"] if severity == Severity.CRITICAL else timeouts["default"]
        return cls(steps=tuple(steps), escalation_timeout_hours=timeout)

    @property
    def requires_multiple_reviewers(self) -> bool:
        return len(self.steps) > 1

    def step(self, index: int) -> WorkflowStep:
        return self.steps[min(index, len(self.steps) - 1)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "escalation_timeout_hours": self.escalation_timeout_hours,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewWorkflow":
        return cls(
            steps=tuple(WorkflowStep.from_dict(s) for s in data["steps"]),
            escalation_timeout_hours=int(data["escalation_timeout_hours"]),
        )


@dataclass(frozen=True)
class ReviewDecision:
    """审核决定（记录后不可变）"""
    verdict: Optional[Verdict]
    confidence: float
    reasoning: str
    recommended_actions: Tuple[RecommendedAction, ...] = ()
    ban_duration: Optional[str] = None
    invalidation_scope: Optional[str] = None

    @property
    def is_definitive(self) -> bool:
        return self.verdict is not None and self.verdict != Verdict.INCONCLUSIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value if self.verdict else None,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "recommended_actions": [a.value for a in self.recommended_actions],
            "ban_duration": self.ban_duration,
            "invalidation_scope": self.invalidation_scope,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewDecision":
        verdict = data.get("verdict")
        return cls(
            verdict=Verdict(verdict) if verdict else None,
            confidence=float(data.get("confidence", 0.0)),
            reasoning=data.get("reasoning") or "",
            recommended_actions=tuple(RecommendedAction(a) for a in data.get("recommended_actions", [])),
            ban_duration=data.get("ban_duration"),
            invalidation_scope=data.get("invalidation_scope"),
        )


@dataclass(frozen=True)
class ReviewRecord:
    """审核历史条目"""
    reviewer_id: str
    decision: ReviewDecision
    submitted_at: datetime
    started_at: Optional[datetime]
    step_index: int

    @property
    def time_spent_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.submitted_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reviewer_id": self.reviewer_id,
            "decision": self.decision.to_dict(),
            "submitted_at": dump_time(self.submitted_at),
            "started_at": dump_time(self.started_at),
            "step_index": self.step_index,
            "time_spent_seconds": self.time_spent_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewRecord":
        return cls(
            reviewer_id=data["reviewer_id"],
            decision=ReviewDecision.from_dict(data["decision"]),
            submitted_at=load_time(data["submitted_at"]),
            started_at=load_time(data.get("started_at")),
            step_index=int(data.get("step_index", 0)),
        )


@dataclass
class ReviewCase:
    """人工审核案件"""
    case_id: str
    user_id: str
    session_id: str
    puzzle_id: str
    detection: DetectionResult
    evidence_package: Dict[str, Any]
    status: CaseStatus
    priority: CasePriority
    workflow: ReviewWorkflow
    created_at: datetime
    deadline: datetime
    source: CaseSource = CaseSource.DETECTION
    current_step: int = 0
    step_started_at: Optional[datetime] = None
    required_tier: Tier = Tier.REVIEWER
    assigned_reviewer: Optional[str] = None
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    review_started_at: Optional[datetime] = None
    review_history: List[ReviewRecord] = field(default_factory=list)
    status_history: List[Dict[str, Any]] = field(default_factory=list)
    escalation: Optional[Dict[str, Any]] = None
    additional_review_reason: Optional[str] = None
    appeal: Optional[Dict[str, Any]] = None
    final_decision: Optional[ReviewDecision] = None
    resolved_at: Optional[datetime] = None
    appeal_deadline: Optional[datetime] = None
    linked_detections: List[str] = field(default_factory=list)
    linked_reports: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @property
    def severity(self) -> Severity:
        return self.detection.severity

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_workflow_step(self) -> WorkflowStep:
        return self.workflow.step(self.current_step)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "case_id": self.case_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "puzzle_id": self.puzzle_id,
            "detection": self.detection.to_dict(),
            "evidence_package": self.evidence_package,
            "status": self.status.value,
            "priority": self.priority.value,
            "severity": self.severity.value,
            "workflow": self.workflow.to_dict(),
            "created_at": dump_time(self.created_at),
            "deadline": dump_time(self.deadline),
            "source": self.source.value,
            "current_step": self.current_step,
            "step_started_at": dump_time(self.step_started_at),
            "required_tier": self.required_tier.value,
            "assigned_reviewer": self.assigned_reviewer,
            "assigned_at": dump_time(self.assigned_at),
            "assigned_by": self.assigned_by,
            "review_started_at": dump_time(self.review_started_at),
            "review_history": [r.to_dict() for r in self.review_history],
            "status_history": list(self.status_history),
            "escalation": self.escalation,
            "additional_review_reason": self.additional_review_reason,
            "appeal": self.appeal,
            "final_decision": self.final_decision.to_dict() if self.final_decision else None,
            "resolved_at": dump_time(self.resolved_at),
            "appeal_deadline": dump_time(self.appeal_deadline),
            "linked_detections": list(self.linked_detections),
            "linked_reports": list(self.linked_reports),
            "updated_at": dump_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewCase":
        final = data.get("final_decision")
        return cls(
            case_id=data["case_id"],
            user_id=data["user_id"],
            session_id=data["session_id"],
            puzzle_id=data["puzzle_id"],
            detection=DetectionResult.from_dict(data["detection"]),
            evidence_package=data.get("evidence_package") or {},
            status=CaseStatus(data["status"]),
            priority=CasePriority(data["priority"]),
            workflow=ReviewWorkflow.from_dict(data["workflow"]),
            created_at=load_time(data["created_at"]),
            deadline=load_time(data["deadline"]),
            source=CaseSource(data.get("source", CaseSource.DETECTION.value)),
            current_step=int(data.get("current_step", 0)),
            step_started_at=load_time(data.get("step_started_at")),
            required_tier=Tier(data.get("required_tier", Tier.REVIEWER.value)),
            assigned_reviewer=data.get("assigned_reviewer"),
            assigned_at=load_time(data.get("assigned_at")),
            assigned_by=data.get("assigned_by"),
            review_started_at=load_time(data.get("review_started_at")),
            review_history=[ReviewRecord.from_dict(r) for r in data.get("review_history", [])],
            status_history=list(data.get("status_history", [])),
            escalation=data.get("escalation"),
            additional_review_reason=data.get("additional_review_reason"),
            appeal=data.get("appeal"),
            final_decision=ReviewDecision.from_dict(final) if final else None,
            resolved_at=load_time(data.get("resolved_at")),
            appeal_deadline=load_time(data.get("appeal_deadline")),
            linked_detections=list(data.get("linked_detections", [])),
            linked_reports=list(data.get("linked_reports", [])),
            updated_at=load_time(data.get("updated_at")),
        )


@dataclass
class ReviewAnalysis:
    """审核分析（开始审核时生成）"""
    case_id: str
    generated_at: datetime
    evidence_summary: Dict[str, Any]
    risk_factors: List[str]
    mitigating_factors: List[str]
    similar_cases: List[Dict[str, Any]]
    recommended_verdict: Verdict
    confidence_level: float
    suggested_investigation: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "generated_at": self.generated_at.isoformat(),
            "evidence_summary": self.evidence_summary,
            "risk_factors": self.risk_factors,
            "mitigating_factors": self.mitigating_factors,
            "similar_cases": self.similar_cases,
            "recommended_verdict": self.recommended_verdict.value,
            "confidence_level": self.confidence_level,
            "suggested_investigation": self.suggested_investigation,
        }


# =============================================================================
# Case Manager
# =============================================================================
class CaseManager:
    """人工审核案件管理"""

    def __init__(
        self,
        store: RecordStore,
        reviewers: ReviewerPool,
        enforcement: Optional[EnforcementService] = None,
        notifications: Optional[NotificationSink] = None,
        feedback: Optional[DetectionFeedback] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Optional[Clock] = None,
        config: Optional[Dict[str, Any]] = None
    ):
        self.store = store
        self.store.register(CASES, ReviewCase)
        self.reviewers = reviewers
        self.clock = clock or utc_now
        self.enforcement = enforcement or EnforcementService(store=store, clock=self.clock)
        self.notifications = notifications or LoggingNotificationSink()
        self.feedback = feedback
        self.metrics = metrics or NullMetricsSink()
        self.config = {**REVIEW_CONFIG, **(config or {})}

        self._create_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

        logger.info("CaseManager initialized")

    def _case_lock(self, case_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[case_id]

    # =========================================================================
    # Case Creation
    # =========================================================================
    def derive_priority(self, detection: DetectionResult) -> CasePriority:
        if detection.severity == Severity.CRITICAL:
            return CasePriority.URGENT
        if (detection.severity == Severity.HIGH
                or len(detection.flags) >= 3
                or detection.confidence > 0.8
                or detection.flags & CRITICAL_FLAGS):
            return CasePriority.HIGH
        return CasePriority.MEDIUM

    def deadline_for(self, priority: CasePriority, start: datetime) -> datetime:
        return start + timedelta(hours=self.config["deadline_hours"][priority.value])

    def create_case(
        self,
        detection: DetectionResult,
        priority: Optional[CasePriority] = None,
        evidence_package: Optional[Dict[str, Any]] = None,
        source: CaseSource = CaseSource.DETECTION
    ) -> ReviewCase:
        """为被标记的检测创建案件；同一 (user, session, puzzle) 只更新不重复"""
        now = self.clock()
        priority = CasePriority(priority) if priority else self.derive_priority(detection)

        with self._create_lock:
            existing = self.find_case_for(detection.user_id, detection.session_id, detection.puzzle_id)
            if existing is None:
                case = self._new_case(detection, priority, evidence_package, source, now)
                self.store.put(CASES, case.case_id, case)

        if existing is not None:
            return self._update_existing_case(existing.case_id, detection, priority, now)

        fire_and_forget("metrics.case_created", self.metrics.emit, MetricEvent(
            kind="case_created", occurred_at=now, user_id=case.user_id, subject_id=case.case_id,
            attributes={"severity": case.severity.value, "priority": priority.value,
                        "source": case.source.value}
        ))
        logger.info(f"Review case {case.case_id} created with priority {priority.value}")

        return self._try_auto_assign(case.case_id)

    def _new_case(self, detection: DetectionResult, priority: CasePriority,
                  evidence_package: Optional[Dict[str, Any]], source: CaseSource,
                  now: datetime) -> ReviewCase:
        workflow = ReviewWorkflow.for_severity(detection.severity, self.config)
        return ReviewCase(
            case_id=f"case_{uuid.uuid4().hex[:12]}",
            user_id=detection.user_id,
            session_id=detection.session_id,
            puzzle_id=detection.puzzle_id,
            detection=detection,
            evidence_package=evidence_package or self._build_evidence_package(detection),
            status=CaseStatus.PENDING,
            priority=priority,
            workflow=workflow,
            created_at=now,
            deadline=self.deadline_for(priority, now),
            source=CaseSource(source),
            step_started_at=now,
            required_tier=workflow.steps[0].required_tier,
            linked_detections=[detection.detection_id],
            updated_at=now,
        )

    def _update_existing_case(self, case_id: str, detection: DetectionResult,
                              priority: CasePriority, now: datetime) -> ReviewCase:
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            if detection.detection_id not in case.linked_detections:
                case.linked_detections.append(detection.detection_id)
            if not case.is_terminal:
                case.detection = detection
                case.evidence_package = self._build_evidence_package(detection)
                if priority.rank > case.priority.rank:
                    case.priority = priority
                    case.deadline = min(case.deadline, self.deadline_for(priority, now))
            case.updated_at = now
            self.store.put(CASES, case.case_id, case)
        logger.info(f"Review case {case_id} updated by repeated detection {detection.detection_id}")
        return case

    def _build_evidence_package(self, detection: DetectionResult) -> Dict[str, Any]:
        return {
            "detection_id": detection.detection_id,
            "flags": sorted(f.value for f in detection.flags),
            "confidence": detection.confidence,
            "severity": detection.severity.value,
            "analysis": detection.analysis,
            "recommendations": list(detection.recommendations),
            "device_info": dict(detection.evidence.device_info),
            "browser_info": dict(detection.evidence.browser_info),
            "move_count": len(detection.evidence.moves),
        }

    def find_case_for(self, user_id: str, session_id: str, puzzle_id: str) -> Optional[ReviewCase]:
        cases = self.store.find(CASES, user_id=user_id, session_id=session_id, puzzle_id=puzzle_id)
        cases = [c for c in cases if c.status != CaseStatus.ARCHIVED]
        if not cases:
            return None
        return sorted(cases, key=lambda c: c.created_at)[0]

    def attach_report(self, case_id: str, report_id: str,
                      priority: Optional[CasePriority] = None) -> ReviewCase:
        """社区举报并入已有案件"""
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            if report_id not in case.linked_reports:
                case.linked_reports.append(report_id)
            if priority and not case.is_terminal and CasePriority(priority).rank > case.priority.rank:
                case.priority = CasePriority(priority)
                case.deadline = min(case.deadline, self.deadline_for(case.priority, self.clock()))
            case.updated_at = self.clock()
            self.store.put(CASES, case.case_id, case)
        logger.info(f"Report {report_id} attached to case {case_id}")
        return case

    def open_case_from_report(
        self,
        report_id: str,
        reported_user_id: str,
        session_id: Optional[str],
        puzzle_id: Optional[str],
        severity: Severity,
        summary: Optional[Dict[str, Any]] = None
    ) -> ReviewCase:
        """
        社区举报转审核案件

        An open case for the same user (and session, when the report names one)
        is reinforced with the report; otherwise a case is opened from a
        synthetic detection that carries no flags.
        """
        severity = Severity(severity)
        priority = REPORT_SEVERITY_PRIORITY[severity]
        open_cases = [
            c for c in self.store.find(CASES, user_id=reported_user_id)
            if not c.is_terminal and (not session_id or c.session_id == session_id)
        ]
        if open_cases:
            target = sorted(open_cases, key=lambda c: c.created_at)[0]
            return self.attach_report(target.case_id, report_id, priority)

        now = self.clock()
        evidence = EvidenceBundle(
            user_id=reported_user_id,
            session_id=session_id or f"report:{report_id}",
            puzzle_id=puzzle_id or "unknown",
            puzzle_type=None,
            moves=(),
            timing_deltas=(),
            solution_time_ms=None,
            start_time_ms=None,
            end_time_ms=None,
        )
        detection = DetectionResult(
            detection_id=f"report-{report_id}",
            user_id=reported_user_id,
            puzzle_id=evidence.puzzle_id,
            session_id=evidence.session_id,
            flags=frozenset(),
            severity=severity,
            confidence=0.0,
            evidence=evidence,
            analysis={"source": CaseSource.COMMUNITY_REPORT.value, "report_id": report_id,
                      **(summary or {})},
            recommendations=["Review community report evidence"],
            detected_at=now,
        )
        case = self.create_case(detection, priority=priority, source=CaseSource.COMMUNITY_REPORT,
                                evidence_package={"report_id": report_id, **(summary or {})})
        return self.attach_report(case.case_id, report_id)

    # =========================================================================
    # Assignment
    # =========================================================================
    def reviewer_load(self, reviewer_id: str) -> int:
        return self.store.count(
            CASES, assigned_reviewer=reviewer_id, status=[s.value for s in OPEN_LOAD_STATUSES]
        )

    def _reviewer_capacity(self, reviewer) -> int:
        if reviewer.max_load is not None:
            return reviewer.max_load
        return self.config["max_cases_per_reviewer"]

    def assign_reviewer(self, case_id: str, reviewer_id: str, assigned_by: str) -> ReviewCase:
        """分配审核员；负载已满时案件保持排队状态"""
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            if case.status not in QUEUED_STATUSES:
                raise InvalidStateError(
                    "invalid_state",
                    f"Cannot assign reviewer to case in status: {case.status.value}",
                    {"case_id": case_id, "status": case.status.value}
                )

            reviewer = self.reviewers.get(reviewer_id)
            if reviewer is None or not reviewer.active:
                raise NotFoundError("reviewer_not_found", f"Reviewer {reviewer_id} not found")
            if reviewer.tier.rank < case.required_tier.rank:
                raise EligibilityDenied(
                    "reviewer_tier_too_low",
                    f"Case {case_id} requires tier {case.required_tier.value}",
                    {"reviewer_tier": reviewer.tier.value, "required_tier": case.required_tier.value}
                )
            load = self.reviewer_load(reviewer_id)
            if load >= self._reviewer_capacity(reviewer):
                raise CapacityExceeded(
                    "reviewer_at_capacity",
                    f"Reviewer {reviewer_id} has reached maximum case load",
                    {"load": load}
                )

            now = self.clock()
            self._transition(case, CaseStatus.ASSIGNED, assigned_by)
            case.assigned_reviewer = reviewer_id
            case.assigned_at = now
            case.assigned_by = assigned_by
            case.updated_at = now
            self.store.put(CASES, case.case_id, case)

        fire_and_forget("notify.assignment", self.notifications.notify, reviewer_id, "case_assigned",
                        {"case_id": case_id, "priority": case.priority.value})
        logger.info(f"Assigned reviewer {reviewer_id} to case {case_id}")
        return case

    def _try_auto_assign(self, case_id: str) -> ReviewCase:
        """自动分配；失败时案件保持排队，不抛出"""
        case = self._get_case(case_id)
        # 已审核过本案的审核员不再参与后续审核
        previous_reviewers = {r.reviewer_id for r in case.review_history}
        reviewer = self.reviewers.select(case.required_tier, self.reviewer_load,
                                         exclude=previous_reviewers)
        if reviewer is None:
            logger.warning(f"No available reviewers for case {case_id}")
            return case
        try:
            return self.assign_reviewer(case_id, reviewer.reviewer_id, "system")
        except (CapacityExceeded, InvalidStateError, NotFoundError, EligibilityDenied) as e:
            logger.warning(f"Auto-assignment failed for case {case_id}: {e.reason}")
            return self._get_case(case_id)

    # =========================================================================
    # Review
    # =========================================================================
    def start_review(self, case_id: str, reviewer_id: str) -> ReviewAnalysis:
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            if case.assigned_reviewer != reviewer_id:
                raise InvalidStateError(
                    "not_assigned_reviewer",
                    f"Case {case_id} is not assigned to reviewer {reviewer_id}"
                )
            if case.status != CaseStatus.ASSIGNED:
                raise InvalidStateError(
                    "invalid_state",
                    f"Cannot start review for case in status: {case.status.value}"
                )

            now = self.clock()
            self._transition(case, CaseStatus.IN_REVIEW, reviewer_id)
            case.review_started_at = now
            case.updated_at = now
            self.store.put(CASES, case.case_id, case)

        logger.info(f"Review started for case {case_id} by reviewer {reviewer_id}")
        return self.generate_review_analysis(case)

    def validate_decision(self, decision: ReviewDecision):
        if decision.verdict is None:
            raise ValidationFailure("missing_verdict", "Review verdict is required")
        if not isinstance(decision.verdict, Verdict):
            raise ValidationFailure("invalid_verdict", f"Unknown verdict: {decision.verdict}")
        if decision.confidence is None or not 0.0 <= decision.confidence <= 1.0:
            raise ValidationFailure("confidence_out_of_range", "Confidence must be between 0 and 1")
        if not decision.reasoning or len(decision.reasoning.strip()) < self.config["min_reasoning_length"]:
            raise ValidationFailure("reasoning_too_short", "Detailed reasoning is required")
        if decision.is_definitive and decision.confidence < self.config["required_confidence"]:
            raise ValidationFailure(
                "insufficient_confidence",
                "Confidence level too low for definitive verdict",
                {"required": self.config["required_confidence"]}
            )
        if decision.ban_duration is not None:
            try:
                parse_duration(decision.ban_duration)
            except ValueError:
                raise ValidationFailure(
                    "invalid_ban_duration",
                    f"Invalid ban duration: {decision.ban_duration}",
                    {"ban_duration": decision.ban_duration, "format": "<n>m|h|d|w or permanent"}
                )

    def additional_review_reason(self, case: ReviewCase, decision: ReviewDecision) -> Optional[str]:
        """
        判断提交该决定后是否需要再次审核（不修改案件）

        Returns:
            原因文本；不需要时返回 None
        """
        history = case.review_history
        if decision.confidence < self.config["additional_review_confidence"]:
            return LOW_CONFIDENCE
        if decision.verdict == Verdict.INCONCLUSIVE:
            return INCONCLUSIVE_VERDICT
        if history and history[-1].decision.verdict != decision.verdict:
            return CONFLICTING_REVIEWS
        if case.severity == Severity.CRITICAL and len(history) + 1 < 2:
            return CRITICAL_SECOND_REVIEW
        return None

    def needs_additional_review(self, case: ReviewCase, decision: ReviewDecision) -> bool:
        return self.additional_review_reason(case, decision) is not None

    def submit_review(self, case_id: str, reviewer_id: str, decision: ReviewDecision) -> ReviewCase:
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            if case.assigned_reviewer != reviewer_id:
                raise InvalidStateError(
                    "not_assigned_reviewer",
                    f"Case {case_id} is not assigned to reviewer {reviewer_id}"
                )
            if case.status != CaseStatus.IN_REVIEW:
                raise InvalidStateError(
                    "invalid_state",
                    f"Cannot submit review for case in status: {case.status.value}"
                )
            self.validate_decision(decision)

            now = self.clock()
            reason = self.additional_review_reason(case, decision)
            case.review_history.append(ReviewRecord(
                reviewer_id=reviewer_id,
                decision=decision,
                submitted_at=now,
                started_at=case.review_started_at,
                step_index=case.current_step,
            ))

            review_count = len(case.review_history)
            max_reviews = self.config["max_reviews"]
            if reason is not None and review_count > max_reviews and reason in TIE_BREAKABLE_REASONS:
                # 升级后的审核员给出明确决定，直接裁决
                logger.info(f"Case {case_id} decided by escalated review despite: {reason}")
                reason = None
            if reason is None:
                self._complete(case, decision, reviewer_id, now)
            elif review_count >= max_reviews:
                self._escalate_at_review_limit(case, reason, now)
            else:
                self._request_additional_review(case, reason, reviewer_id, now)
            self.store.put(CASES, case.case_id, case)

        logger.info(f"Review submitted for case {case_id} by reviewer {reviewer_id}: {decision.verdict.value}")

        if reason is not None:
            fire_and_forget("notify.additional_review", self.notifications.notify, reviewer_id,
                            "additional_review_requested", {"case_id": case_id, "reason": reason})
            return self._try_auto_assign(case_id)

        self._execute_decision_actions(case, decision)
        fire_and_forget("notify.decision", self.notifications.notify, case.user_id, "case_decision",
                        {"case_id": case_id, "verdict": decision.verdict.value,
                         "appeal_deadline": dump_time(case.appeal_deadline)})
        return case

    def _request_additional_review(self, case: ReviewCase, reason: str, actor: str, now: datetime):
        self._transition(case, CaseStatus.PENDING_ADDITIONAL_REVIEW, actor, reason)
        case.additional_review_reason = reason
        case.current_step = min(case.current_step + 1, len(case.workflow.steps) - 1)
        case.step_started_at = now
        step_tier = case.current_workflow_step.required_tier
        case.required_tier = step_tier if step_tier.rank >= Tier.SENIOR.rank else Tier.SENIOR
        case.assigned_reviewer = None
        case.assigned_at = None
        case.review_started_at = None
        case.updated_at = now
        logger.info(f"Case {case.case_id} needs additional review: {reason}")

    def _escalate_at_review_limit(self, case: ReviewCase, reason: str, now: datetime):
        """达到审核次数上限仍无定论：交给更高等级，而不是以低置信度结案"""
        target_tier = case.required_tier.next_tier()
        if target_tier.rank < Tier.EXPERT.rank:
            target_tier = Tier.EXPERT
        self._apply_escalation(
            case, "system",
            f"{reason} after {len(case.review_history)} reviews",
            EscalationLevel(target_tier.value), now
        )
        case.additional_review_reason = reason
        logger.warning(f"Case {case.case_id} reached the review limit, escalated to {target_tier.value}")

    def _complete(self, case: ReviewCase, decision: ReviewDecision, actor: str, now: datetime):
        self._transition(case, CaseStatus.COMPLETED, actor)
        case.final_decision = decision
        case.resolved_at = now
        case.additional_review_reason = None
        if decision.verdict == Verdict.CONFIRMED_CHEAT:
            case.appeal_deadline = now + timedelta(days=self.config["appeal_window_days"])
        case.updated_at = now
        logger.info(f"Review completed for case {case.case_id}: {decision.verdict.value}")

    # =========================================================================
    # Decision Execution
    # =========================================================================
    def _execute_decision_actions(self, case: ReviewCase, decision: ReviewDecision):
        handler = VERDICT_HANDLERS[decision.verdict]
        handler(self, case, decision)
        fire_and_forget("metrics.case_completed", self.metrics.emit, MetricEvent(
            kind="case_completed", occurred_at=self.clock(), user_id=case.user_id,
            subject_id=case.case_id, attributes={"verdict": decision.verdict.value,
                                                 "source": case.source.value}
        ))

    def _handle_confirmed_cheat(self, case: ReviewCase, decision: ReviewDecision):
        duration = decision.ban_duration or self.config["default_ban_duration"]
        scope = decision.invalidation_scope or self.config["default_invalidation_scope"]
        fire_and_forget("enforcement.ban", self.enforcement.ban_user, case.user_id, duration,
                        f"Confirmed cheating (case {case.case_id})", source_id=case.case_id,
                        issued_by=case.assigned_reviewer)
        fire_and_forget("enforcement.invalidate", self.enforcement.invalidate_results,
                        case.user_id, scope, case.case_id, issued_by=case.assigned_reviewer)
        self._send_feedback(case, "confirmed_cheat")
        if case.source == CaseSource.COMMUNITY_REPORT and not case.detection.is_flagged:
            # 检测引擎漏报
            fire_and_forget("metrics.false_negative", self.metrics.emit, MetricEvent(
                kind="false_negative", occurred_at=self.clock(), user_id=case.user_id,
                subject_id=case.case_id
            ))

    def _handle_suspicious(self, case: ReviewCase, decision: ReviewDecision):
        fire_and_forget("enforcement.monitoring", self.enforcement.increase_monitoring, case.user_id,
                        self.config["suspicious_monitoring_days"], f"Suspicious activity (case {case.case_id})")
        fire_and_forget("enforcement.warning", self.enforcement.warn_user, case.user_id,
                        "Your recent activity has been flagged as suspicious", source_id=case.case_id,
                        issued_by=case.assigned_reviewer)

    def _handle_legitimate(self, case: ReviewCase, decision: ReviewDecision):
        fire_and_forget("enforcement.clear", self.enforcement.remove_restrictions, case.user_id,
                        case.assigned_reviewer or "system", f"Case {case.case_id} cleared")
        self._send_feedback(case, "false_positive")
        if case.source == CaseSource.DETECTION:
            fire_and_forget("metrics.false_positive", self.metrics.emit, MetricEvent(
                kind="false_positive", occurred_at=self.clock(), user_id=case.user_id,
                subject_id=case.case_id,
                attributes={"flags": sorted(f.value for f in case.detection.flags)}
            ))

    def _handle_inconclusive(self, case: ReviewCase, decision: ReviewDecision):
        fire_and_forget("enforcement.watch_list", self.enforcement.add_to_watch_list, case.user_id,
                        self.config["inconclusive_watch_days"], f"Inconclusive review (case {case.case_id})")
        fire_and_forget("enforcement.request_data", self.enforcement.request_additional_data,
                        case.user_id, f"Inconclusive review (case {case.case_id})")

    def _send_feedback(self, case: ReviewCase, signal: str):
        if self.feedback is None:
            return
        fire_and_forget("detection.feedback", self.feedback.record_feedback, case.user_id,
                        case.case_id, signal, sorted(f.value for f in case.detection.flags))

    # =========================================================================
    # Escalation & Lifecycle
    # =========================================================================
    def escalate_case(self, case_id: str, escalated_by: str, reason: str,
                      target_level: EscalationLevel) -> ReviewCase:
        """
        人工升级：清除当前分配，按目标等级重新排队

        Works from any status; a completed, withdrawn or archived case is
        reopened and its earlier decision stays in the review history.
        """
        target_level = EscalationLevel(target_level)
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            previous_reviewer = case.assigned_reviewer
            if case.is_terminal:
                logger.warning(f"Reopening {case.status.value} case {case_id} by escalation")
            self._apply_escalation(case, escalated_by, reason, target_level, self.clock())
            self.store.put(CASES, case.case_id, case)

        logger.warning(f"Case {case_id} escalated to {target_level.value} level by {escalated_by}: {reason}")
        if previous_reviewer:
            fire_and_forget("notify.escalation", self.notifications.notify, previous_reviewer,
                            "case_escalated", {"case_id": case_id, "reason": reason})
        return self._try_auto_assign(case_id)

    def _apply_escalation(self, case: ReviewCase, escalated_by: str, reason: str,
                          target_level: EscalationLevel, now: datetime):
        self._transition(case, CaseStatus.ESCALATED, escalated_by, reason)
        case.escalation = {
            "escalated_by": escalated_by,
            "escalated_at": dump_time(now),
            "reason": reason,
            "target_level": target_level.value,
            "previous_reviewer": case.assigned_reviewer,
        }
        case.required_tier = target_level.tier
        case.assigned_reviewer = None
        case.assigned_at = None
        case.review_started_at = None
        case.step_started_at = now
        case.updated_at = now

    def restart_case(self, case_id: str, restarted_by: str, reason: str) -> ReviewCase:
        """显式重启：回到 pending 与第一步"""
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            now = self.clock()
            self._transition(case, CaseStatus.PENDING, restarted_by, reason)
            case.current_step = 0
            case.step_started_at = now
            case.required_tier = case.workflow.steps[0].required_tier
            case.assigned_reviewer = None
            case.assigned_at = None
            case.updated_at = now
            self.store.put(CASES, case.case_id, case)
        logger.info(f"Case {case_id} restarted by {restarted_by}: {reason}")
        return self._try_auto_assign(case_id)

    def withdraw_case(self, case_id: str, withdrawn_by: str, reason: str) -> ReviewCase:
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            self._transition(case, CaseStatus.WITHDRAWN, withdrawn_by, reason)
            case.assigned_reviewer = None
            case.updated_at = self.clock()
            self.store.put(CASES, case.case_id, case)
        logger.info(f"Case {case_id} withdrawn by {withdrawn_by}")
        return case

    def archive_case(self, case_id: str, archived_by: str) -> ReviewCase:
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            self._transition(case, CaseStatus.ARCHIVED, archived_by)
            case.updated_at = self.clock()
            self.store.put(CASES, case.case_id, case)
        return case

    def record_appeal_outcome(self, case_id: str, appeal_id: str, status: str,
                      outcome: Optional[Dict[str, Any]] = None) -> ReviewCase:
        """记录案件关联的申诉及其结果"""
        with self._case_lock(case_id):
            case = self._get_case(case_id)
            case.appeal = {
                "appeal_id": appeal_id,
                "status": status,
                "outcome": outcome,
                "updated_at": dump_time(self.clock()),
            }
            case.updated_at = self.clock()
            self.store.put(CASES, case.case_id, case)
        return case

    # =========================================================================
    # Time-based Checks (driven by the external scheduler)
    # =========================================================================
    def find_overdue_cases(self, now: Optional[datetime] = None) -> List[Tuple[ReviewCase, str]]:
        now = now or self.clock()
        overdue = []
        for case in self.store.find(CASES):
            if case.is_terminal or case.step_started_at is None:
                continue
            elapsed = now - case.step_started_at
            if case.status == CaseStatus.ESCALATED:
                limit = timedelta(hours=case.workflow.escalation_timeout_hours)
                if elapsed > limit:
                    overdue.append((case, f"Escalation not picked up within "
                                          f"{case.workflow.escalation_timeout_hours}h"))
                continue
            step = case.current_workflow_step
            if elapsed > timedelta(hours=step.time_limit_hours):
                overdue.append((case, f"Workflow step '{step.name}' exceeded {step.time_limit_hours}h"))
        return overdue

    def escalate_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """超时案件升级到下一等级"""
        escalated = []
        for case, reason in self.find_overdue_cases(now):
            next_tier = case.required_tier.next_tier()
            if next_tier.rank < Tier.SENIOR.rank:
                next_tier = Tier.SENIOR
            try:
                self.escalate_case(case.case_id, "system", reason, EscalationLevel(next_tier.value))
                escalated.append(case.case_id)
            except InvalidStateError as e:
                logger.warning(f"Overdue case {case.case_id} not escalated: {e.reason}")
        return escalated

    # =========================================================================
    # Queries
    # =========================================================================
    def get_case(self, case_id: str) -> ReviewCase:
        return self._get_case(case_id)

    def list_cases(self, status: Optional[CaseStatus] = None, user_id: Optional[str] = None,
                   assigned_reviewer: Optional[str] = None) -> List[ReviewCase]:
        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = CaseStatus(status).value
        if user_id:
            filters["user_id"] = user_id
        if assigned_reviewer:
            filters["assigned_reviewer"] = assigned_reviewer
        cases = self.store.find(CASES, **filters)
        cases.sort(key=lambda c: c.created_at, reverse=True)
        return cases

    def review_queue(self, tier: Tier) -> List[ReviewCase]:
        """某等级可领取的排队案件，按优先级与截止时间排序"""
        tier = Tier(tier)
        cases = [
            c for c in self.store.find(CASES, status=[s.value for s in QUEUED_STATUSES])
            if c.required_tier.rank <= tier.rank
        ]
        cases.sort(key=lambda c: (-c.priority.rank, c.deadline))
        return cases

    def get_statistics(self) -> Dict[str, Any]:
        cases = self.store.find(CASES)
        by_status: Dict[str, int] = defaultdict(int)
        by_verdict: Dict[str, int] = defaultdict(int)
        for c in cases:
            by_status[c.status.value] += 1
            if c.final_decision and c.final_decision.verdict:
                by_verdict[c.final_decision.verdict.value] += 1
        return {
            "total_cases": len(cases),
            "by_status": dict(by_status),
            "by_verdict": dict(by_verdict),
        }

    # =========================================================================
    # Analysis
    # =========================================================================
    def generate_review_analysis(self, case: ReviewCase) -> ReviewAnalysis:
        detection = case.detection
        return ReviewAnalysis(
            case_id=case.case_id,
            generated_at=self.clock(),
            evidence_summary={
                "flag_count": len(detection.flags),
                "severity": detection.severity.value,
                "confidence": detection.confidence,
                "move_count": len(detection.evidence.moves),
                "linked_reports": len(case.linked_reports),
                "previous_reviews": len(case.review_history),
            },
            risk_factors=self._risk_factors(detection),
            mitigating_factors=self._mitigating_factors(case),
            similar_cases=self._similar_cases(case),
            recommended_verdict=self.recommend_verdict(detection),
            confidence_level=detection.confidence,
            suggested_investigation=self._suggest_investigation(detection),
        )

    @staticmethod
    def recommend_verdict(detection: DetectionResult) -> Verdict:
        if detection.confidence > 0.9 and detection.severity == Severity.CRITICAL:
            return Verdict.CONFIRMED_CHEAT
        if detection.confidence > 0.7:
            return Verdict.SUSPICIOUS
        if detection.confidence < 0.3:
            return Verdict.LEGITIMATE
        return Verdict.INCONCLUSIVE

    @staticmethod
    def _risk_factors(detection: DetectionResult) -> List[str]:
        return [RISK_FACTOR_TEXT[f] for f in sorted(detection.flags, key=lambda f: f.value)
                if f in RISK_FACTOR_TEXT]

    def _mitigating_factors(self, case: ReviewCase) -> List[str]:
        factors = []
        if case.detection.confidence < 0.6:
            factors.append("Low confidence in detection")
        if not case.detection.is_flagged:
            factors.append("Only incomplete telemetry was flagged")
        previous = self.store.find(CASES, user_id=case.user_id, status=CaseStatus.COMPLETED.value)
        if any(c.final_decision and c.final_decision.verdict == Verdict.LEGITIMATE for c in previous):
            factors.append("User previously cleared in an earlier review")
        return factors

    def _similar_cases(self, case: ReviewCase, limit: int = 5) -> List[Dict[str, Any]]:
        similar = []
        for other in self.store.find(CASES):
            if other.case_id == case.case_id:
                continue
            overlap = case.detection.flags & other.detection.flags
            if not overlap:
                continue
            similar.append({
                "case_id": other.case_id,
                "overlap": sorted(f.value for f in overlap),
                "verdict": other.final_decision.verdict.value
                if other.final_decision and other.final_decision.verdict else None,
            })
        similar.sort(key=lambda s: -len(s["overlap"]))
        return similar[:limit]

    @staticmethod
    def _suggest_investigation(detection: DetectionResult) -> List[str]:
        suggestions = []
        if CheatFlag.TIMING_ANOMALY in detection.flags:
            suggestions.append("Investigate user's device specifications")
        if CheatFlag.PERFECT_SOLUTION in detection.flags:
            suggestions.append("Check for similar solutions online")
        if detection.flags & CRITICAL_FLAGS:
            suggestions.append("Inspect client for automation tooling")
        if CheatFlag.MISSING_TIMING_DATA in detection.flags or CheatFlag.EMPTY_MOVE_SEQUENCE in detection.flags:
            suggestions.append("Collect complete telemetry from the next session")
        return suggestions

    # =========================================================================
    # Helpers
    # =========================================================================
    def _get_case(self, case_id: str) -> ReviewCase:
        case = self.store.get(CASES, case_id)
        if case is None:
            raise NotFoundError("case_not_found", f"Review case {case_id} not found", {"case_id": case_id})
        return case

    def _transition(self, case: ReviewCase, new_status: CaseStatus, actor: str,
                    reason: Optional[str] = None):
        if new_status not in ALLOWED_TRANSITIONS[case.status]:
            raise InvalidStateError(
                "invalid_transition",
                f"Case {case.case_id} cannot move from {case.status.value} to {new_status.value}",
                {"from": case.status.value, "to": new_status.value}
            )
        case.status_history.append({
            "from": case.status.value,
            "to": new_status.value,
            "by": actor,
            "reason": reason,
            "at": dump_time(self.clock()),
        })
        case.status = new_status


VERDICT_HANDLERS: Dict[Verdict, Callable[[CaseManager, ReviewCase, ReviewDecision], None]] = {
    Verdict.CONFIRMED_CHEAT: CaseManager._handle_confirmed_cheat,
    Verdict.SUSPICIOUS: CaseManager._handle_suspicious,
    Verdict.LEGITIMATE: CaseManager._handle_legitimate,
    Verdict.INCONCLUSIVE: CaseManager._handle_inconclusive,
}

# 新增结论时必须同时补充处理函数
assert set(VERDICT_HANDLERS) == set(Verdict), "every verdict needs a handler"
