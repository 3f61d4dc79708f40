"""
PuzzleGuard Appeal Manager
申诉系统 - 资格校验、自动裁决、人工复审、处罚撤销 / 调整

核心功能:
1. 申诉提交与资格校验 (Appeal Submission & Eligibility)
2. 自动裁决 (Automatic Decision)
3. 申诉审核员分配 (Appeal Reviewer Assignment)
4. 申诉分析与裁决 (Appeal Analysis & Decision)
5. 裁决执行 (Decision Execution)
6. 撤回与查询 (Withdrawal & Queries)
"""
import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from config.settings import APPEAL_CONFIG, RECORD_SCHEMA_VERSION, REVIEW_CONFIG
from kernel.src.errors import (
    EligibilityDenied, InvalidStateError, NotFoundError, ValidationFailure
)
from kernel.src.ports import (
    Clock, DetectionFeedback, LoggingNotificationSink, MetricEvent, MetricsSink,
    NotificationSink, NullMetricsSink, fire_and_forget, utc_now
)
from kernel.src.repository import APPEALS, RecordStore, dump_time, load_time
from review.src.case_manager import CaseManager, CaseStatus, ReviewCase, Verdict
from review.src.reviewer_pool import ReviewerPool, Tier
from safety.src.enforcement_service import (
    EnforcementService, PunishmentType, halve_duration, parse_duration
)

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================
class AppealStatus(str, Enum):
    """申诉状态"""
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"
    WITHDRAWN = "withdrawn"


class AppealPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AppealOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"


class EvidenceType(str, Enum):
    """申诉证据类型"""
    NEW_EVIDENCE = "new_evidence"
    PROCEDURAL_ERROR = "procedural_error"
    BIAS_CLAIM = "bias_claim"
    TECHNICAL_ISSUE = "technical_issue"
    CONTEXT_MISSING = "context_missing"
    EXPERT_OPINION = "expert_opinion"
    CHARACTER_REFERENCE = "character_reference"


class AppealType(str, Enum):
    SELF = "self"
    ADVOCATE = "advocate"


WITHDRAWABLE_STATUSES = frozenset({AppealStatus.SUBMITTED, AppealStatus.UNDER_REVIEW})

# 各证据类型的基础强度
EVIDENCE_TYPE_STRENGTH = {
    EvidenceType.NEW_EVIDENCE: 0.8,
    EvidenceType.PROCEDURAL_ERROR: 0.9,
    EvidenceType.BIAS_CLAIM: 0.6,
    EvidenceType.TECHNICAL_ISSUE: 0.7,
    EvidenceType.CONTEXT_MISSING: 0.5,
    EvidenceType.EXPERT_OPINION: 0.7,
    EvidenceType.CHARACTER_REFERENCE: 0.3,
}


# =============================================================================
# Data Classes
# =============================================================================
@dataclass
class AppealEvidence:
    """申诉证据"""
    evidence_type: EvidenceType
    description: str
    documentation: List[str] = field(default_factory=list)
    witnesses: List[str] = field(default_factory=list)
    expert_opinion: Optional[str] = None
    verified_source: bool = False
    independently_verified: bool = False
    is_new: bool = False
    relevance: float = 0.5
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence_type": self.evidence_type.value,
            "description": self.description,
            "documentation": list(self.documentation),
            "witnesses": list(self.witnesses),
            "expert_opinion": self.expert_opinion,
            "verified_source": self.verified_source,
            "independently_verified": self.independently_verified,
            "is_new": self.is_new,
            "relevance": self.relevance,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppealEvidence":
        raw_type = data.get("evidence_type") or data.get("type")
        try:
            evidence_type = EvidenceType(raw_type)
        except ValueError:
            raise ValidationFailure(
                "invalid_evidence_type", f"Invalid evidence type: {raw_type}",
                {"allowed": [t.value for t in EvidenceType]}
            )
        confidence = data.get("confidence")
        return cls(
            evidence_type=evidence_type,
            description=data.get("description") or "",
            documentation=list(data.get("documentation") or []),
            witnesses=list(data.get("witnesses") or []),
            expert_opinion=data.get("expert_opinion"),
            verified_source=bool(data.get("verified_source", False)),
            independently_verified=bool(data.get("independently_verified", False)),
            is_new=bool(data.get("is_new", False)),
            relevance=float(data.get("relevance", 0.5)),
            confidence=float(confidence) if confidence is not None else None,
        )


@dataclass(frozen=True)
class ModifiedPenalty:
    """调整后的处罚"""
    penalty_type: PunishmentType
    duration: Optional[str] = None
    restrictions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "penalty_type": self.penalty_type.value,
            "duration": self.duration,
            "restrictions": list(self.restrictions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModifiedPenalty":
        return cls(
            penalty_type=PunishmentType(data["penalty_type"]),
            duration=data.get("duration"),
            restrictions=tuple(data.get("restrictions") or []),
        )


@dataclass(frozen=True)
class AppealDecision:
    """申诉裁决"""
    outcome: AppealOutcome
    reasoning: str
    confidence: float
    reviewer_id: str
    reviewed_at: datetime
    new_penalty: Optional[ModifiedPenalty] = None
    compensation_offered: bool = False
    follow_up_required: bool = False
    precedent_set: bool = False
    lessons_learned: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "reviewer_id": self.reviewer_id,
            "reviewed_at": self.reviewed_at.isoformat(),
            "new_penalty": self.new_penalty.to_dict() if self.new_penalty else None,
            "compensation_offered": self.compensation_offered,
            "follow_up_required": self.follow_up_required,
            "precedent_set": self.precedent_set,
            "lessons_learned": list(self.lessons_learned),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppealDecision":
        penalty = data.get("new_penalty")
        return cls(
            outcome=AppealOutcome(data["outcome"]),
            reasoning=data.get("reasoning") or "",
            confidence=float(data.get("confidence", 0.0)),
            reviewer_id=data["reviewer_id"],
            reviewed_at=load_time(data["reviewed_at"]),
            new_penalty=ModifiedPenalty.from_dict(penalty) if penalty else None,
            compensation_offered=bool(data.get("compensation_offered", False)),
            follow_up_required=bool(data.get("follow_up_required", False)),
            precedent_set=bool(data.get("precedent_set", False)),
            lessons_learned=tuple(data.get("lessons_learned") or []),
        )


@dataclass
class AppealAnalysis:
    """申诉分析结果"""
    evidence_strength: float
    evidence_credibility: float
    evidence_relevance: float
    evidence_novelty: float
    procedural_violations: List[str]
    bias_detected: bool
    bias_confidence: float
    new_information_significant: bool
    precedent_exists: bool
    precedent_approval_rate: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence": {
                "strength": self.evidence_strength,
                "credibility": self.evidence_credibility,
                "relevance": self.evidence_relevance,
                "novelty": self.evidence_novelty,
            },
            "procedure": {
                "violations": list(self.procedural_violations),
                "compliant": not self.procedural_violations,
            },
            "bias": {"detected": self.bias_detected, "confidence": self.bias_confidence},
            "new_information": {"significant": self.new_information_significant},
            "precedent": {
                "exists": self.precedent_exists,
                "approval_rate": self.precedent_approval_rate,
            },
        }


@dataclass
class Appeal:
    """申诉记录"""
    appeal_id: str
    original_case_id: str
    user_id: str
    appealed_by: str
    appeal_type: AppealType
    reason: str
    evidence: AppealEvidence
    original_decision: Dict[str, Any]
    status: AppealStatus
    priority: AppealPriority
    submitted_at: datetime
    deadline_at: datetime
    appeal_fee: float = 0.0
    appeal_fee_waived: bool = True
    assigned_reviewer: Optional[str] = None
    review_started_at: Optional[datetime] = None
    review_completed_at: Optional[datetime] = None
    decision: Optional[AppealDecision] = None
    analysis: Optional[Dict[str, Any]] = None
    withdrawal: Optional[Dict[str, Any]] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in WITHDRAWABLE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "appeal_id": self.appeal_id,
            "original_case_id": self.original_case_id,
            "user_id": self.user_id,
            "appealed_by": self.appealed_by,
            "appeal_type": self.appeal_type.value,
            "reason": self.reason,
            "evidence": self.evidence.to_dict(),
            "original_decision": self.original_decision,
            "status": self.status.value,
            "priority": self.priority.value,
            "submitted_at": dump_time(self.submitted_at),
            "created_at": dump_time(self.submitted_at),
            "deadline_at": dump_time(self.deadline_at),
            "appeal_fee": self.appeal_fee,
            "appeal_fee_waived": self.appeal_fee_waived,
            "assigned_reviewer": self.assigned_reviewer,
            "review_started_at": dump_time(self.review_started_at),
            "review_completed_at": dump_time(self.review_completed_at),
            "decision": self.decision.to_dict() if self.decision else None,
            "analysis": self.analysis,
            "withdrawal": self.withdrawal,
            "updated_at": dump_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Appeal":
        decision = data.get("decision")
        return cls(
            appeal_id=data["appeal_id"],
            original_case_id=data["original_case_id"],
            user_id=data["user_id"],
            appealed_by=data.get("appealed_by") or data["user_id"],
            appeal_type=AppealType(data.get("appeal_type", AppealType.SELF.value)),
            reason=data.get("reason") or "",
            evidence=AppealEvidence.from_dict(data["evidence"]),
            original_decision=data.get("original_decision") or {},
            status=AppealStatus(data["status"]),
            priority=AppealPriority(data.get("priority", AppealPriority.NORMAL.value)),
            submitted_at=load_time(data["submitted_at"]),
            deadline_at=load_time(data["deadline_at"]),
            appeal_fee=float(data.get("appeal_fee", 0.0)),
            appeal_fee_waived=bool(data.get("appeal_fee_waived", True)),
            assigned_reviewer=data.get("assigned_reviewer"),
            review_started_at=load_time(data.get("review_started_at")),
            review_completed_at=load_time(data.get("review_completed_at")),
            decision=AppealDecision.from_dict(decision) if decision else None,
            analysis=data.get("analysis"),
            withdrawal=data.get("withdrawal"),
            updated_at=load_time(data.get("updated_at")),
        )


# =============================================================================
# Appeal Manager
# =============================================================================
class AppealManager:
    """申诉管理"""

    def __init__(
        self,
        store: RecordStore,
        case_manager: CaseManager,
        reviewers: Optional[ReviewerPool] = None,
        enforcement: Optional[EnforcementService] = None,
        notifications: Optional[NotificationSink] = None,
        feedback: Optional[DetectionFeedback] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Optional[Clock] = None,
        config: Optional[Dict[str, Any]] = None
    ):
        self.store = store
        self.store.register(APPEALS, Appeal)
        self.case_manager = case_manager
        self.reviewers = reviewers or case_manager.reviewers
        self.clock = clock or case_manager.clock or utc_now
        self.enforcement = enforcement or case_manager.enforcement
        self.notifications = notifications or LoggingNotificationSink()
        self.feedback = feedback
        self.metrics = metrics or NullMetricsSink()
        self.config = {**APPEAL_CONFIG, **(config or {})}

        self._submit_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

        logger.info("AppealManager initialized")

    def _appeal_lock(self, appeal_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[appeal_id]

    # =========================================================================
    # Submission
    # =========================================================================
    def submit_appeal(
        self,
        case_id: str,
        user_id: str,
        reason: str,
        evidence: AppealEvidence,
        advocate_id: Optional[str] = None
    ) -> Appeal:
        """
        提交申诉

        Args:
            case_id: 原审核案件
            user_id: 被处罚用户
            reason: 申诉理由（至少50字符）
            evidence: 申诉证据
            advocate_id: 代理人（为空时为本人申诉）

        Returns:
            创建的申诉；满足条件时已自动裁决
        """
        if isinstance(evidence, dict):
            evidence = AppealEvidence.from_dict(evidence)
        self.validate_appeal_content(reason, evidence)

        with self._submit_lock:
            case = self.case_manager.get_case(case_id)
            now = self.clock()
            self.validate_eligibility(case, user_id, now)

            fee, waived = self.compute_fee(user_id)
            appeal = Appeal(
                appeal_id=f"APL-{uuid.uuid4().hex[:12]}",
                original_case_id=case_id,
                user_id=user_id,
                appealed_by=advocate_id or user_id,
                appeal_type=AppealType.ADVOCATE if advocate_id and advocate_id != user_id else AppealType.SELF,
                reason=reason,
                evidence=evidence,
                original_decision=self._original_decision_summary(case),
                status=AppealStatus.SUBMITTED,
                priority=self.determine_priority(case, evidence),
                submitted_at=now,
                deadline_at=now + timedelta(days=self.config["review_time_limit_days"]),
                appeal_fee=fee,
                appeal_fee_waived=waived,
                updated_at=now,
            )
            self.store.put(APPEALS, appeal.appeal_id, appeal)

        fire_and_forget("case.link_appeal", self.case_manager.record_appeal_outcome,
                        case_id, appeal.appeal_id, appeal.status.value)
        fire_and_forget("notify.appeal_submitted", self.notifications.notify, user_id,
                        "appeal_submitted", {"appeal_id": appeal.appeal_id, "case_id": case_id})
        logger.info(f"Appeal {appeal.appeal_id} submitted for case {case_id} by user {user_id}")

        if self.qualifies_for_auto_approval(evidence):
            return self._auto_approve(appeal.appeal_id)
        return self._try_auto_assign(appeal.appeal_id)

    def validate_appeal_content(self, reason: str, evidence: AppealEvidence):
        if not reason or len(reason.strip()) < self.config["min_reason_length"]:
            raise ValidationFailure(
                "appeal_reason_too_short",
                f"Appeal reason must be at least {self.config['min_reason_length']} characters"
            )
        if evidence is None:
            raise ValidationFailure("missing_evidence", "Appeal must include supporting evidence")
        if not isinstance(evidence.evidence_type, EvidenceType):
            raise ValidationFailure("invalid_evidence_type", "Invalid evidence type")
        if not 0.0 <= evidence.relevance <= 1.0:
            raise ValidationFailure("relevance_out_of_range", "Relevance must be between 0 and 1")
        if evidence.confidence is not None and not 0.0 <= evidence.confidence <= 1.0:
            raise ValidationFailure("confidence_out_of_range", "Confidence must be between 0 and 1")

    def validate_eligibility(self, case: ReviewCase, user_id: str, now: datetime):
        if case.status != CaseStatus.COMPLETED:
            raise EligibilityDenied(
                "case_not_completed", "Can only appeal completed cases",
                {"case_id": case.case_id, "status": case.status.value}
            )
        if case.user_id != user_id:
            raise EligibilityDenied("not_case_owner", "Appeal must be filed for the penalized user")

        window_end = case.resolved_at + timedelta(days=self.config["appeal_window_days"])
        if now > window_end:
            raise EligibilityDenied(
                "appeal_window_expired", "Appeal deadline has passed",
                {"deadline": window_end.isoformat()}
            )

        if self.store.count(APPEALS, original_case_id=case.case_id, user_id=user_id) > 0:
            raise EligibilityDenied("duplicate_appeal", "Appeal already submitted for this case")

        period_start = now - timedelta(days=self.config["appeal_count_period_days"])
        recent = self.store.count(APPEALS, lambda a: a.submitted_at >= period_start, user_id=user_id)
        if recent >= self.config["max_appeals_per_user"]:
            raise EligibilityDenied(
                "appeal_limit_reached", "Annual appeal limit exceeded",
                {"limit": self.config["max_appeals_per_user"], "count": recent}
            )

    def compute_fee(self, user_id: str) -> Tuple[float, bool]:
        """申诉费用；默认全部减免"""
        fee = float(self.config["appeal_fee"])
        waived = bool(self.config["waive_appeal_fees"]) or fee <= 0
        return fee, waived

    @staticmethod
    def original_penalty(case: ReviewCase) -> Optional[PunishmentType]:
        decision = case.final_decision
        if decision is None or decision.verdict != Verdict.CONFIRMED_CHEAT:
            return None
        duration = decision.ban_duration or REVIEW_CONFIG["default_ban_duration"]
        if parse_duration(duration) is None:
            return PunishmentType.PERMANENT_BAN
        return PunishmentType.TEMPORARY_BAN

    def determine_priority(self, case: ReviewCase, evidence: AppealEvidence) -> AppealPriority:
        penalty = self.original_penalty(case)
        if penalty == PunishmentType.PERMANENT_BAN:
            return AppealPriority.URGENT
        if penalty == PunishmentType.TEMPORARY_BAN:
            return AppealPriority.HIGH
        if evidence.evidence_type in (EvidenceType.NEW_EVIDENCE, EvidenceType.PROCEDURAL_ERROR):
            return AppealPriority.HIGH
        return AppealPriority.NORMAL

    def _original_decision_summary(self, case: ReviewCase) -> Dict[str, Any]:
        summary = case.final_decision.to_dict() if case.final_decision else {}
        if case.review_history:
            last = case.review_history[-1]
            summary["reviewer_id"] = last.reviewer_id
            summary["time_spent_seconds"] = last.time_spent_seconds
        summary["severity"] = case.severity.value
        penalty = self.original_penalty(case)
        summary["penalty"] = penalty.value if penalty else None
        return summary

    # =========================================================================
    # Automatic Decision
    # =========================================================================
    def evidence_confidence(self, evidence: AppealEvidence) -> float:
        if evidence.confidence is not None:
            return evidence.confidence
        return self.evidence_strength(evidence)

    def qualifies_for_auto_approval(self, evidence: AppealEvidence) -> bool:
        """只有申诉人明确给出置信度的程序错误才能自动通过"""
        if evidence.evidence_type != EvidenceType.PROCEDURAL_ERROR or evidence.confidence is None:
            return False
        return evidence.confidence > self.config["auto_approval_threshold"]

    def _auto_approve(self, appeal_id: str) -> Appeal:
        with self._appeal_lock(appeal_id):
            appeal = self._get_appeal(appeal_id)
            now = self.clock()
            decision = AppealDecision(
                outcome=AppealOutcome.APPROVED,
                reasoning="Automatic approval due to clear procedural error",
                confidence=self.evidence_confidence(appeal.evidence),
                reviewer_id="system",
                reviewed_at=now,
                compensation_offered=True,
            )
            appeal.decision = decision
            appeal.status = AppealStatus.APPROVED
            appeal.review_completed_at = now
            appeal.updated_at = now
            self.store.put(APPEALS, appeal.appeal_id, appeal)

        logger.info(f"Appeal {appeal_id} automatically approved")
        self._execute_decision(appeal, decision)
        return appeal

    # =========================================================================
    # Assignment
    # =========================================================================
    def reviewer_load(self, reviewer_id: str) -> int:
        return self.store.count(
            APPEALS, assigned_reviewer=reviewer_id, status=AppealStatus.UNDER_REVIEW.value
        )

    def required_tier(self, appeal: Appeal) -> Tier:
        """高优先级或强证据的申诉需要专家"""
        if appeal.priority == AppealPriority.URGENT:
            return Tier.EXPERT
        if self.evidence_strength(appeal.evidence) >= self.config["expert_review_threshold"]:
            return Tier.EXPERT
        return Tier.SENIOR

    def assign_appeal_reviewer(self, appeal_id: str, reviewer_id: str) -> Appeal:
        with self._appeal_lock(appeal_id):
            appeal = self._get_appeal(appeal_id)
            if appeal.status != AppealStatus.SUBMITTED:
                raise InvalidStateError(
                    "invalid_state",
                    f"Cannot assign reviewer to appeal in status: {appeal.status.value}"
                )
            reviewer = self.reviewers.get(reviewer_id)
            if reviewer is None or not reviewer.active:
                raise NotFoundError("reviewer_not_found", f"Reviewer {reviewer_id} not found")
            if reviewer.tier.rank < Tier.SENIOR.rank:
                raise EligibilityDenied(
                    "reviewer_tier_too_low", "Appeals require a senior reviewer or above",
                    {"reviewer_tier": reviewer.tier.value}
                )

            now = self.clock()
            appeal.assigned_reviewer = reviewer_id
            appeal.review_started_at = now
            appeal.status = AppealStatus.UNDER_REVIEW
            appeal.updated_at = now
            self.store.put(APPEALS, appeal.appeal_id, appeal)

        fire_and_forget("case.link_appeal", self.case_manager.record_appeal_outcome,
                        appeal.original_case_id, appeal_id, appeal.status.value)
        fire_and_forget("notify.appeal_assigned", self.notifications.notify, reviewer_id,
                        "appeal_assigned", {"appeal_id": appeal_id, "priority": appeal.priority.value})
        logger.info(f"Assigned appeal reviewer {reviewer_id} to {appeal_id}")
        return appeal

    def _try_auto_assign(self, appeal_id: str) -> Appeal:
        appeal = self._get_appeal(appeal_id)
        original_reviewers = {
            r.reviewer_id for r in self.case_manager.get_case(appeal.original_case_id).review_history
        }

        def load_of(reviewer_id: str) -> int:
            # 原审核员不参与申诉复审
            if reviewer_id in original_reviewers:
                return self.config["max_reviewer_appeals"]
            return self.reviewer_load(reviewer_id)

        tier = self.required_tier(appeal)
        candidates = [r for r in self.reviewers.list(min_tier=tier)
                      if r.active and load_of(r.reviewer_id) < self.config["max_reviewer_appeals"]]
        if not candidates:
            logger.warning(f"No available appeal reviewers for {appeal_id}")
            return appeal
        candidates.sort(key=lambda r: (load_of(r.reviewer_id), r.tier.rank, r.reviewer_id))
        try:
            return self.assign_appeal_reviewer(appeal_id, candidates[0].reviewer_id)
        except (InvalidStateError, NotFoundError, EligibilityDenied) as e:
            logger.warning(f"Auto-assignment failed for appeal {appeal_id}: {e.reason}")
            return self._get_appeal(appeal_id)

    # =========================================================================
    # Review
    # =========================================================================
    def review_appeal(self, appeal_id: str, reviewer_id: str,
                      notes: Optional[str] = None) -> AppealDecision:
        """人工复审：分析证据、原审核流程、偏见与先例，得出裁决并执行"""
        with self._appeal_lock(appeal_id):
            appeal = self._get_appeal(appeal_id)
            if appeal.status != AppealStatus.UNDER_REVIEW:
                raise InvalidStateError(
                    "invalid_state", f"Cannot review appeal in status: {appeal.status.value}"
                )
            if appeal.assigned_reviewer != reviewer_id:
                raise InvalidStateError(
                    "not_assigned_reviewer",
                    f"Appeal {appeal_id} is not assigned to reviewer {reviewer_id}"
                )

            analysis = self.analyze_appeal(appeal)
            decision = self.make_decision(appeal, analysis, reviewer_id)

            appeal.analysis = analysis.to_dict()
            if notes:
                appeal.analysis["notes"] = notes
            appeal.decision = decision
            appeal.status = AppealStatus(decision.outcome.value)
            appeal.review_completed_at = decision.reviewed_at
            appeal.updated_at = decision.reviewed_at
            self.store.put(APPEALS, appeal.appeal_id, appeal)

        logger.info(f"Appeal {appeal_id} reviewed: {decision.outcome.value}")
        self._execute_decision(appeal, decision)
        return decision

    def analyze_appeal(self, appeal: Appeal) -> AppealAnalysis:
        evidence = appeal.evidence
        credibility = self.evidence_credibility(evidence)
        bias_detected, bias_confidence = self.assess_bias(appeal, credibility)
        precedent_exists, approval_rate = self.analyze_precedents(appeal)
        return AppealAnalysis(
            evidence_strength=self.evidence_strength(evidence),
            evidence_credibility=credibility,
            evidence_relevance=evidence.relevance,
            evidence_novelty=0.8 if evidence.is_new else 0.2,
            procedural_violations=self.check_procedure_compliance(appeal.original_decision),
            bias_detected=bias_detected,
            bias_confidence=bias_confidence,
            new_information_significant=evidence.is_new and evidence.relevance > 0.7,
            precedent_exists=precedent_exists,
            precedent_approval_rate=approval_rate,
        )

    @staticmethod
    def evidence_strength(evidence: AppealEvidence) -> float:
        strength = EVIDENCE_TYPE_STRENGTH.get(evidence.evidence_type, 0.1)
        if evidence.documentation:
            strength += 0.1
        if evidence.witnesses:
            strength += 0.05 * min(len(evidence.witnesses), 3)
        if evidence.expert_opinion:
            strength += 0.15
        return min(strength, 1.0)

    @staticmethod
    def evidence_credibility(evidence: AppealEvidence) -> float:
        credibility = 0.5
        if evidence.verified_source:
            credibility += 0.3
        if evidence.independently_verified:
            credibility += 0.2
        return min(credibility, 1.0)

    def check_procedure_compliance(self, original: Dict[str, Any]) -> List[str]:
        """原审核流程检查"""
        violations = []
        if original.get("time_spent_seconds", 0) < self.config["min_review_seconds"]:
            violations.append("Insufficient time spent on review")
        if len(original.get("reasoning") or "") < self.config["min_original_reasoning_length"]:
            violations.append("Inadequate reasoning provided")
        if original.get("verdict") == Verdict.CONFIRMED_CHEAT.value and original.get("confidence", 0) < 0.7:
            violations.append("Definitive verdict with low confidence")
        return violations

    @staticmethod
    def assess_bias(appeal: Appeal, credibility: float) -> Tuple[bool, float]:
        """偏见申诉只在来源可信时成立"""
        if appeal.evidence.evidence_type != EvidenceType.BIAS_CLAIM:
            return False, 0.1
        if credibility >= 0.8:
            return True, round(credibility * 0.8, 2)
        return False, round(credibility * 0.5, 2)

    def analyze_precedents(self, appeal: Appeal) -> Tuple[bool, Optional[float]]:
        decided = [
            a for a in self.store.find(APPEALS, status=[
                AppealStatus.APPROVED.value, AppealStatus.REJECTED.value, AppealStatus.MODIFIED.value
            ])
            if a.appeal_id != appeal.appeal_id
            and a.evidence.evidence_type == appeal.evidence.evidence_type
        ]
        if not decided:
            return False, None
        approved = sum(1 for a in decided if a.status == AppealStatus.APPROVED)
        return True, round(approved / len(decided), 3)

    def make_decision(self, appeal: Appeal, analysis: AppealAnalysis,
                      reviewer_id: str) -> AppealDecision:
        outcome = AppealOutcome.REJECTED
        reasoning: List[str] = []
        confidence = 0.5
        new_penalty = None
        compensation = False

        if analysis.evidence_strength > 0.8:
            outcome = AppealOutcome.APPROVED
            reasoning.append("Strong new evidence supports appeal")
            confidence = analysis.evidence_strength
            compensation = True
        elif analysis.procedural_violations:
            outcome = AppealOutcome.APPROVED
            reasoning.append("Procedural violations found in original review")
            reasoning.extend(analysis.procedural_violations)
            confidence = 0.9
            compensation = True
        elif analysis.bias_detected:
            outcome = AppealOutcome.MODIFIED
            reasoning.append("Potential bias detected, penalty reduced")
            new_penalty = ModifiedPenalty(PunishmentType.WARNING, restrictions=("increased_monitoring",))
            confidence = analysis.bias_confidence
        elif analysis.new_information_significant:
            outcome = AppealOutcome.MODIFIED
            reasoning.append("New information warrants penalty modification")
            new_penalty = self.reduced_penalty(appeal)
            confidence = 0.7
        else:
            reasoning.append("Insufficient evidence to overturn original decision")
            reasoning.append("Original review procedures were followed correctly")
            confidence = 0.8

        lessons = []
        if analysis.procedural_violations:
            lessons.append("Review procedures need reinforcement")
        if analysis.evidence_novelty > 0.7:
            lessons.append("Detection system missed important context")

        return AppealDecision(
            outcome=outcome,
            reasoning=". ".join(reasoning),
            confidence=confidence,
            reviewer_id=reviewer_id,
            reviewed_at=self.clock(),
            new_penalty=new_penalty,
            compensation_offered=compensation,
            follow_up_required=outcome == AppealOutcome.APPROVED and compensation,
            precedent_set=not analysis.precedent_exists,
            lessons_learned=tuple(lessons),
        )

    def reduced_penalty(self, appeal: Appeal) -> ModifiedPenalty:
        """新信息：封禁时长减半；永久封禁降为默认时长"""
        original = appeal.original_decision
        duration = original.get("ban_duration") or REVIEW_CONFIG["default_ban_duration"]
        if parse_duration(duration) is None:
            reduced = REVIEW_CONFIG["default_ban_duration"]
        else:
            reduced = halve_duration(duration)
        return ModifiedPenalty(PunishmentType.TEMPORARY_BAN, duration=reduced, restrictions=("monitoring",))

    # =========================================================================
    # Decision Execution
    # =========================================================================
    def _execute_decision(self, appeal: Appeal, decision: AppealDecision):
        handler = OUTCOME_HANDLERS[decision.outcome]
        handler(self, appeal, decision)
        fire_and_forget("case.appeal_outcome", self.case_manager.record_appeal_outcome,
                        appeal.original_case_id, appeal.appeal_id, appeal.status.value,
                        decision.to_dict())
        fire_and_forget("notify.appeal_decision", self.notifications.notify, appeal.user_id,
                        "appeal_decision", {"appeal_id": appeal.appeal_id,
                                            "outcome": decision.outcome.value})

    def _execute_approval(self, appeal: Appeal, decision: AppealDecision):
        logger.info(f"Executing approval actions for appeal {appeal.appeal_id}")
        case_id = appeal.original_case_id
        fire_and_forget("enforcement.revoke", self.enforcement.revoke_punishments, appeal.user_id,
                        decision.reviewer_id, f"Appeal {appeal.appeal_id} approved", source_id=case_id)
        fire_and_forget("enforcement.restore", self.enforcement.restore_results, appeal.user_id, case_id)
        fire_and_forget("enforcement.clear_record", self.enforcement.clear_record, appeal.user_id, case_id)
        if decision.compensation_offered:
            fire_and_forget("enforcement.compensation", self.enforcement.issue_compensation,
                            appeal.user_id, case_id, f"Overturned decision ({appeal.appeal_id})")
        flags = sorted(f.value for f in self.case_manager.get_case(case_id).detection.flags)
        if self.feedback is not None:
            fire_and_forget("detection.feedback", self.feedback.record_feedback, appeal.user_id,
                            appeal.appeal_id, "false_positive", flags)
        fire_and_forget("metrics.false_positive", self.metrics.emit, MetricEvent(
            kind="false_positive", occurred_at=self.clock(), user_id=appeal.user_id,
            subject_id=case_id, attributes={"appeal_id": appeal.appeal_id, "flags": flags}
        ))

    def _execute_modification(self, appeal: Appeal, decision: AppealDecision):
        logger.info(f"Executing modification actions for appeal {appeal.appeal_id}")
        case_id = appeal.original_case_id
        fire_and_forget("enforcement.revoke_ban", self.enforcement.revoke_punishments, appeal.user_id,
                        decision.reviewer_id, f"Appeal {appeal.appeal_id} modified penalty",
                        source_id=case_id,
                        types=[PunishmentType.TEMPORARY_BAN, PunishmentType.PERMANENT_BAN])
        penalty = decision.new_penalty
        if penalty is not None:
            fire_and_forget("enforcement.modified_penalty", self.enforcement.issue_punishment,
                            appeal.user_id, penalty.penalty_type,
                            f"Modified penalty after appeal {appeal.appeal_id}",
                            duration=penalty.duration, source_id=case_id, issued_by=decision.reviewer_id)
            if "increased_monitoring" in penalty.restrictions or "monitoring" in penalty.restrictions:
                fire_and_forget("enforcement.monitoring", self.enforcement.increase_monitoring,
                                appeal.user_id, REVIEW_CONFIG["suspicious_monitoring_days"],
                                f"Appeal {appeal.appeal_id} modification")
        fire_and_forget("enforcement.partial_restore", self.enforcement.restore_results,
                        appeal.user_id, case_id, partial=True)

    def _execute_rejection(self, appeal: Appeal, decision: AppealDecision):
        logger.info(f"Appeal {appeal.appeal_id} rejected - no actions required")
        fire_and_forget("notify.appeal_feedback", self.notifications.notify, appeal.user_id,
                        "appeal_feedback", {"appeal_id": appeal.appeal_id, "reasoning": decision.reasoning})

    # =========================================================================
    # Withdrawal & Queries
    # =========================================================================
    def withdraw_appeal(self, appeal_id: str, withdrawn_by: str, reason: str) -> Appeal:
        with self._appeal_lock(appeal_id):
            appeal = self._get_appeal(appeal_id)
            if appeal.status not in WITHDRAWABLE_STATUSES:
                raise InvalidStateError(
                    "invalid_state", f"Cannot withdraw appeal in status: {appeal.status.value}"
                )
            now = self.clock()
            appeal.status = AppealStatus.WITHDRAWN
            appeal.withdrawal = {"withdrawn_by": withdrawn_by, "reason": reason, "at": dump_time(now)}
            appeal.updated_at = now
            self.store.put(APPEALS, appeal.appeal_id, appeal)

        logger.info(f"Appeal {appeal_id} withdrawn by {withdrawn_by}: {reason}")
        fire_and_forget("case.appeal_outcome", self.case_manager.record_appeal_outcome,
                        appeal.original_case_id, appeal_id, appeal.status.value)
        recipients = {appeal.user_id, appeal.assigned_reviewer} - {None}
        for recipient in sorted(recipients):
            fire_and_forget("notify.appeal_withdrawn", self.notifications.notify, recipient,
                            "appeal_withdrawn", {"appeal_id": appeal_id, "reason": reason})
        return appeal

    def get_appeal(self, appeal_id: str) -> Appeal:
        return self._get_appeal(appeal_id)

    def get_appeal_status(self, appeal_id: str) -> Dict[str, Any]:
        appeal = self._get_appeal(appeal_id)
        remaining = (appeal.deadline_at - self.clock()).total_seconds()
        return {
            "appeal_id": appeal.appeal_id,
            "status": appeal.status.value,
            "priority": appeal.priority.value,
            "submitted_at": dump_time(appeal.submitted_at),
            "review_started_at": dump_time(appeal.review_started_at),
            "review_completed_at": dump_time(appeal.review_completed_at),
            "deadline": dump_time(appeal.deadline_at),
            "decision": appeal.decision.to_dict() if appeal.decision else None,
            "can_withdraw": appeal.is_open,
            "time_remaining_seconds": max(0.0, remaining),
        }

    def list_user_appeals(self, user_id: str) -> List[Appeal]:
        appeals = self.store.find(APPEALS, user_id=user_id)
        appeals.sort(key=lambda a: a.submitted_at, reverse=True)
        return appeals

    def list_appeals(self, status: Optional[AppealStatus] = None) -> List[Appeal]:
        filters = {"status": AppealStatus(status).value} if status else {}
        appeals = self.store.find(APPEALS, **filters)
        appeals.sort(key=lambda a: a.submitted_at, reverse=True)
        return appeals

    def get_statistics(self) -> Dict[str, Any]:
        appeals = self.store.find(APPEALS)
        decided = [a for a in appeals if a.decision is not None]
        by_outcome: Dict[str, int] = defaultdict(int)
        by_type: Dict[str, int] = defaultdict(int)
        for a in appeals:
            by_type[a.evidence.evidence_type.value] += 1
        for a in decided:
            by_outcome[a.decision.outcome.value] += 1
        total = len(decided)
        return {
            "total_appeals": len(appeals),
            "decided": total,
            "approval_rate": by_outcome[AppealOutcome.APPROVED.value] / total if total else 0.0,
            "modification_rate": by_outcome[AppealOutcome.MODIFIED.value] / total if total else 0.0,
            "rejection_rate": by_outcome[AppealOutcome.REJECTED.value] / total if total else 0.0,
            "appeals_by_type": dict(by_type),
        }

    def _get_appeal(self, appeal_id: str) -> Appeal:
        appeal = self.store.get(APPEALS, appeal_id)
        if appeal is None:
            raise NotFoundError("appeal_not_found", f"Appeal {appeal_id} not found", {"appeal_id": appeal_id})
        return appeal


OUTCOME_HANDLERS: Dict[AppealOutcome, Callable[[AppealManager, Appeal, AppealDecision], None]] = {
    AppealOutcome.APPROVED: AppealManager._execute_approval,
    AppealOutcome.MODIFIED: AppealManager._execute_modification,
    AppealOutcome.REJECTED: AppealManager._execute_rejection,
}

assert set(OUTCOME_HANDLERS) == set(AppealOutcome), "every appeal outcome needs a handler"
