"""
PuzzleGuard Community Moderation
社区举报与投票 - 举报校验、严重度评估、社区共识、自动处置、版主处理

核心功能:
1. 举报提交 (Report Submission)
2. 社区投票与共识 (Community Voting & Consensus)
3. 自动处置 (Auto Moderation)
4. 版主处理与升级 (Moderation & Escalation)
5. 举报分析与社区指标 (Report Analysis & Metrics)
"""
import logging
import threading
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from config.settings import MODERATION_CONFIG, RECORD_SCHEMA_VERSION
from detection.src.detection_engine import Severity
from kernel.src.errors import (
    EligibilityDenied, InvalidStateError, NotFoundError, ValidationFailure
)
from kernel.src.ports import (
    Clock, InMemoryReputationSource, LoggingNotificationSink, MetricEvent, MetricsSink,
    NotificationSink, NullMetricsSink, ReputationSource, fire_and_forget, utc_now
)
from kernel.src.repository import MODERATORS, REPORTS, VOTES, RecordStore, dump_time, load_time
from review.src.reviewer_pool import ReviewerPool, Tier
from safety.src.enforcement_service import EnforcementService

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================
class ReportType(str, Enum):
    """举报类型"""
    CHEATING = "cheating"
    HARASSMENT = "harassment"
    EXPLOITATION = "exploitation"
    GRIEFING = "griefing"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    ACCOUNT_SHARING = "account_sharing"
    BOTTING = "botting"


class ReportStatus(str, Enum):
    """举报状态"""
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    ESCALATED = "escalated"


class VoteOption(str, Enum):
    LEGITIMATE = "legitimate"
    SUSPICIOUS = "suspicious"
    CHEAT = "cheat"


class Consensus(str, Enum):
    LEGITIMATE = "legitimate"
    SUSPICIOUS = "suspicious"
    CHEAT = "cheat"
    INCONCLUSIVE = "inconclusive"


class ModerationActionType(str, Enum):
    DISMISS = "dismiss"
    WARN = "warn"
    RESTRICT = "restrict"
    BAN = "ban"
    ESCALATE = "escalate"


class ReportEscalationLevel(str, Enum):
    SENIOR = "senior"
    EXPERT = "expert"
    ADMIN = "admin"


OPEN_STATUSES = frozenset({ReportStatus.PENDING, ReportStatus.INVESTIGATING, ReportStatus.ESCALATED})

# 举报类型基础分
TYPE_SEVERITY_SCORE = {
    ReportType.CHEATING: 3,
    ReportType.HARASSMENT: 2,
    ReportType.EXPLOITATION: 3,
    ReportType.GRIEFING: 1,
    ReportType.INAPPROPRIATE_CONTENT: 1,
    ReportType.ACCOUNT_SHARING: 2,
    ReportType.BOTTING: 3,
}

SEVERITY_PRIORITY_ADJUSTMENT = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 2,
    Severity.MEDIUM: 0,
    Severity.LOW: -2,
}

VOTING_TYPES = frozenset({ReportType.CHEATING, ReportType.BOTTING, ReportType.EXPLOITATION})
MANUAL_REVIEW_TYPES = frozenset({ReportType.HARASSMENT, ReportType.INAPPROPRIATE_CONTENT})

# 版主等级可执行的操作
TIER_PERMISSIONS = {
    Tier.JUNIOR: frozenset({ModerationActionType.DISMISS, ModerationActionType.WARN,
                            ModerationActionType.ESCALATE}),
    Tier.REVIEWER: frozenset({ModerationActionType.DISMISS, ModerationActionType.WARN,
                              ModerationActionType.ESCALATE}),
    Tier.SENIOR: frozenset({ModerationActionType.DISMISS, ModerationActionType.WARN,
                            ModerationActionType.RESTRICT, ModerationActionType.ESCALATE}),
    Tier.EXPERT: frozenset(ModerationActionType),
    Tier.ADMIN: frozenset(ModerationActionType),
}

# 各优先级的预估处理时长（小时）
RESOLUTION_HOURS_BY_PRIORITY = {10: 2, 9: 4, 8: 8, 7: 12}

PERIOD_DAYS = {"day": 1, "week": 7, "month": 30}

# 举报转审核案件的回调
CaseOpener = Callable[..., Any]


# =============================================================================
# Data Classes
# =============================================================================
@dataclass
class ReportEvidence:
    """举报附带证据"""
    screenshots: List[str] = field(default_factory=list)
    video_url: Optional[str] = None
    witnesses: List[str] = field(default_factory=list)
    notes: Optional[str] = None

    @property
    def item_count(self) -> int:
        return len(self.screenshots) + len(self.witnesses) + (1 if self.video_url else 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "screenshots": list(self.screenshots),
            "video_url": self.video_url,
            "witnesses": list(self.witnesses),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ReportEvidence":
        data = data or {}
        return cls(
            screenshots=list(data.get("screenshots") or []),
            video_url=data.get("video_url"),
            witnesses=list(data.get("witnesses") or []),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class ReportSubmission:
    """举报内容（提交时的输入）"""
    report_type: ReportType
    reason: str
    description: str
    evidence: ReportEvidence = field(default_factory=ReportEvidence)
    session_id: Optional[str] = None
    puzzle_id: Optional[str] = None


@dataclass(frozen=True)
class ModerationAction:
    """版主操作"""
    action_type: ModerationActionType
    reasoning: str
    duration: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "reasoning": self.reasoning,
            "duration": self.duration,
        }


@dataclass
class CommunityReport:
    """社区举报"""
    report_id: str
    reporter_user_id: str
    reported_user_id: str
    report_type: ReportType
    reason: str
    description: str
    evidence: ReportEvidence
    severity: Severity
    status: ReportStatus
    priority: int
    manual_review_required: bool
    created_at: datetime
    session_id: Optional[str] = None
    puzzle_id: Optional[str] = None
    voting_open: bool = False
    community_votes: int = 0
    vote_tally: Dict[str, int] = field(default_factory=dict)
    community_consensus: Optional[Consensus] = None
    assigned_moderator: Optional[str] = None
    auto_mod_action: Optional[str] = None
    escalation: Optional[Dict[str, Any]] = None
    resolution: Optional[Dict[str, Any]] = None
    resolved_at: Optional[datetime] = None
    linked_case_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "report_id": self.report_id,
            "reporter_user_id": self.reporter_user_id,
            "reported_user_id": self.reported_user_id,
            "report_type": self.report_type.value,
            "reason": self.reason,
            "description": self.description,
            "evidence": self.evidence.to_dict(),
            "severity": self.severity.value,
            "status": self.status.value,
            "priority": self.priority,
            "manual_review_required": self.manual_review_required,
            "created_at": dump_time(self.created_at),
            "session_id": self.session_id,
            "puzzle_id": self.puzzle_id,
            "voting_open": self.voting_open,
            "community_votes": self.community_votes,
            "vote_tally": dict(self.vote_tally),
            "community_consensus": self.community_consensus.value if self.community_consensus else None,
            "assigned_moderator": self.assigned_moderator,
            "auto_mod_action": self.auto_mod_action,
            "escalation": self.escalation,
            "resolution": self.resolution,
            "resolved_at": dump_time(self.resolved_at),
            "linked_case_id": self.linked_case_id,
            "updated_at": dump_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommunityReport":
        consensus = data.get("community_consensus")
        return cls(
            report_id=data["report_id"],
            reporter_user_id=data["reporter_user_id"],
            reported_user_id=data["reported_user_id"],
            report_type=ReportType(data["report_type"]),
            reason=data.get("reason") or "",
            description=data.get("description") or "",
            evidence=ReportEvidence.from_dict(data.get("evidence")),
            severity=Severity(data["severity"]),
            status=ReportStatus(data["status"]),
            priority=int(data.get("priority", 5)),
            manual_review_required=bool(data.get("manual_review_required", False)),
            created_at=load_time(data["created_at"]),
            session_id=data.get("session_id"),
            puzzle_id=data.get("puzzle_id"),
            voting_open=bool(data.get("voting_open", False)),
            community_votes=int(data.get("community_votes", 0)),
            vote_tally=dict(data.get("vote_tally") or {}),
            community_consensus=Consensus(consensus) if consensus else None,
            assigned_moderator=data.get("assigned_moderator"),
            auto_mod_action=data.get("auto_mod_action"),
            escalation=data.get("escalation"),
            resolution=data.get("resolution"),
            resolved_at=load_time(data.get("resolved_at")),
            linked_case_id=data.get("linked_case_id"),
            updated_at=load_time(data.get("updated_at")),
        )


@dataclass(frozen=True)
class ReportVote:
    """社区投票"""
    vote_id: str
    report_id: str
    voter_id: str
    vote: VoteOption
    created_at: datetime
    reasoning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "vote_id": self.vote_id,
            "report_id": self.report_id,
            "voter_id": self.voter_id,
            "vote": self.vote.value,
            "created_at": dump_time(self.created_at),
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReportVote":
        return cls(
            vote_id=data["vote_id"],
            report_id=data["report_id"],
            voter_id=data["voter_id"],
            vote=VoteOption(data["vote"]),
            created_at=load_time(data["created_at"]),
            reasoning=data.get("reasoning"),
        )


# =============================================================================
# Community Moderation
# =============================================================================
class CommunityModeration:
    """社区举报与版主处理"""

    def __init__(
        self,
        store: RecordStore,
        moderators: Optional[ReviewerPool] = None,
        reputation: Optional[ReputationSource] = None,
        enforcement: Optional[EnforcementService] = None,
        case_opener: Optional[CaseOpener] = None,
        notifications: Optional[NotificationSink] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Optional[Clock] = None,
        config: Optional[Dict[str, Any]] = None
    ):
        self.store = store
        self.store.register(REPORTS, CommunityReport)
        self.store.register(VOTES, ReportVote)
        self.config = {**MODERATION_CONFIG, **(config or {})}
        self.moderators = moderators or ReviewerPool(default_max_load=self.config["max_reports_per_moderator"],
                                                     store=store, collection=MODERATORS)
        self.reputation = reputation or InMemoryReputationSource()
        self.clock = clock or utc_now
        self.enforcement = enforcement or EnforcementService(store=store, clock=self.clock)
        self.case_opener = case_opener
        self.notifications = notifications or LoggingNotificationSink()
        self.metrics = metrics or NullMetricsSink()

        self._submit_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

        logger.info("CommunityModeration initialized")

    def _report_lock(self, report_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[report_id]

    # =========================================================================
    # Submission
    # =========================================================================
    def submit_report(self, reporter_user_id: str, reported_user_id: str,
                      submission: ReportSubmission) -> CommunityReport:
        """提交举报"""
        logger.info(f"Community report submitted by {reporter_user_id} against {reported_user_id}")
        self.validate_report_content(submission)
        if reporter_user_id == reported_user_id:
            raise ValidationFailure("self_report", "Users cannot report themselves")

        with self._submit_lock:
            now = self.clock()
            self.validate_reporter(reporter_user_id, now)
            self.check_duplicate(reporter_user_id, reported_user_id, submission.session_id)

            severity = self.calculate_severity(submission)
            report = CommunityReport(
                report_id=f"REP-{uuid.uuid4().hex[:12]}",
                reporter_user_id=reporter_user_id,
                reported_user_id=reported_user_id,
                report_type=submission.report_type,
                reason=submission.reason,
                description=submission.description,
                evidence=submission.evidence,
                severity=severity,
                status=ReportStatus.PENDING,
                priority=self.calculate_priority(submission, severity),
                manual_review_required=self.requires_manual_review(submission, severity),
                created_at=now,
                session_id=submission.session_id,
                puzzle_id=submission.puzzle_id,
                voting_open=submission.report_type in VOTING_TYPES,
                updated_at=now,
            )
            self.store.put(REPORTS, report.report_id, report)

        fire_and_forget("metrics.report_submitted", self.metrics.emit, MetricEvent(
            kind="report_submitted", occurred_at=now, user_id=reported_user_id,
            subject_id=report.report_id, attributes={"report_type": report.report_type.value,
                                                     "severity": severity.value}
        ))
        if report.voting_open:
            logger.info(f"Community voting initiated for report {report.report_id}")
        if report.manual_review_required:
            report = self._try_auto_assign(report.report_id)
        report = self.check_auto_moderation(report.report_id)

        logger.info(f"Report {report.report_id} created with severity {severity.value}")
        return report

    def validate_report_content(self, submission: ReportSubmission):
        if not isinstance(submission.report_type, ReportType):
            raise ValidationFailure("invalid_report_type", f"Invalid report type: {submission.report_type}")
        if not submission.reason or not submission.description:
            raise ValidationFailure("missing_report_fields", "Report must include type, reason, and description")
        description = submission.description.strip()
        if len(description) < self.config["min_description_length"]:
            raise ValidationFailure(
                "description_too_short",
                f"Report description must be at least {self.config['min_description_length']} characters"
            )
        if len(description) > self.config["max_description_length"]:
            raise ValidationFailure(
                "description_too_long",
                f"Report description cannot exceed {self.config['max_description_length']} characters"
            )
        evidence = submission.evidence
        if len(evidence.screenshots) > self.config["max_screenshots"]:
            raise ValidationFailure("too_many_screenshots", "Too many screenshots provided")
        if evidence.video_url and not self.is_valid_video_url(evidence.video_url):
            raise ValidationFailure("invalid_video_url", "Invalid video URL format")

    def is_valid_video_url(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        return any(host == h or host.endswith("." + h) for h in self.config["video_hosts"])

    def validate_reporter(self, reporter_user_id: str, now: datetime):
        thresholds = self.config["reputation_thresholds"]
        if self.reputation.get_reputation(reporter_user_id) < thresholds["can_report"]:
            raise EligibilityDenied("insufficient_reputation", "Insufficient reputation to submit reports",
                                    {"required": thresholds["can_report"]})

        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        reports_today = self.store.count(
            REPORTS, lambda r: r.created_at >= day_start, reporter_user_id=reporter_user_id
        )
        if reports_today >= self.config["max_reports_per_user"]:
            raise EligibilityDenied("daily_report_limit", "Daily report limit exceeded",
                                    {"limit": self.config["max_reports_per_user"]})

        if self.reputation.get_abuse_score(reporter_user_id) > self.config["abuse_score_limit"]:
            raise EligibilityDenied("reporter_abuse", "Reporter flagged for potential abuse")

    def check_duplicate(self, reporter_user_id: str, reported_user_id: str, session_id: Optional[str]):
        existing = self.store.count(
            REPORTS,
            reporter_user_id=reporter_user_id,
            reported_user_id=reported_user_id,
            session_id=session_id,
            status=[ReportStatus.PENDING.value, ReportStatus.INVESTIGATING.value],
        )
        if existing:
            raise EligibilityDenied("duplicate_report", "Duplicate report for the same session")

    @staticmethod
    def calculate_severity(submission: ReportSubmission) -> Severity:
        score = TYPE_SEVERITY_SCORE.get(submission.report_type, 1)
        evidence = submission.evidence
        if evidence.screenshots:
            score += 1
        if evidence.video_url:
            score += 2
        if evidence.witnesses:
            score += 1

        if score >= 6:
            return Severity.CRITICAL
        if score >= 4:
            return Severity.HIGH
        if score >= 2:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def calculate_priority(submission: ReportSubmission, severity: Severity) -> int:
        """1-10，越大越优先"""
        priority = 5 + SEVERITY_PRIORITY_ADJUSTMENT[severity]
        if submission.evidence.video_url:
            priority += 2
        if len(submission.evidence.screenshots) >= 3:
            priority += 1
        if submission.report_type in (ReportType.CHEATING, ReportType.BOTTING):
            priority += 1
        return max(1, min(10, priority))

    @staticmethod
    def requires_manual_review(submission: ReportSubmission, severity: Severity) -> bool:
        return severity == Severity.CRITICAL or submission.report_type in MANUAL_REVIEW_TYPES

    # =========================================================================
    # Moderator Assignment
    # =========================================================================
    def moderator_load(self, moderator_id: str) -> int:
        return self.store.count(
            REPORTS, assigned_moderator=moderator_id,
            status=[ReportStatus.INVESTIGATING.value, ReportStatus.ESCALATED.value]
        )

    def _try_auto_assign(self, report_id: str, min_tier: Optional[Tier] = None) -> CommunityReport:
        with self._report_lock(report_id):
            report = self._get_report(report_id)
            if min_tier is None:
                min_tier = Tier.SENIOR if report.severity == Severity.CRITICAL else Tier.JUNIOR
            moderator = self.moderators.select(min_tier, self.moderator_load,
                                               specialization=report.report_type.value)
            if moderator is None:
                logger.warning(f"No available moderators for report {report_id}")
                return report

            report.assigned_moderator = moderator.reviewer_id
            if report.status == ReportStatus.PENDING:
                report.status = ReportStatus.INVESTIGATING
            report.updated_at = self.clock()
            self.store.put(REPORTS, report.report_id, report)

        fire_and_forget("notify.report_assigned", self.notifications.notify, moderator.reviewer_id,
                        "report_assigned", {"report_id": report_id, "priority": report.priority})
        logger.info(f"Assigned moderator {moderator.reviewer_id} to report {report_id}")
        return report

    # =========================================================================
    # Auto Moderation
    # =========================================================================
    def check_auto_moderation(self, report_id: str) -> CommunityReport:
        """24小时内被举报次数达到阈值时自动临时限制"""
        with self._report_lock(report_id):
            report = self._get_report(report_id)
            cutoff = self.clock() - timedelta(hours=self.config["auto_action_window_hours"])
            recent = self.store.count(
                REPORTS, lambda r: r.created_at >= cutoff, reported_user_id=report.reported_user_id
            )
            if recent < self.config["auto_action_threshold"]:
                return report
            if self.enforcement.is_restricted(report.reported_user_id):
                return report

            applied = fire_and_forget(
                "enforcement.auto_restriction", self.enforcement.restrict_user,
                report.reported_user_id, self.config["auto_restriction_duration"],
                f"Auto moderation: {recent} reports within "
                f"{self.config['auto_action_window_hours']}h", source_id=report.report_id,
                issued_by="auto_moderation"
            )
            if applied:
                report.auto_mod_action = "temporary_restriction"
                report.updated_at = self.clock()
                self.store.put(REPORTS, report.report_id, report)

        if applied:
            logger.warning(f"Auto-moderation action applied to user {report.reported_user_id}")
        return report

    # =========================================================================
    # Voting
    # =========================================================================
    def vote_on_report(self, report_id: str, voter_id: str, vote: VoteOption,
                       reasoning: Optional[str] = None) -> CommunityReport:
        vote = VoteOption(vote)
        logger.info(f"Community vote on report {report_id} by {voter_id}: {vote.value}")

        required = self.config["reputation_thresholds"]["can_vote"]
        if self.reputation.get_reputation(voter_id) < required:
            raise EligibilityDenied("insufficient_reputation", "Insufficient reputation to vote on reports",
                                    {"required": required})

        with self._report_lock(report_id):
            report = self._get_report(report_id)
            if report.status != ReportStatus.PENDING:
                raise InvalidStateError("invalid_state",
                                        f"Cannot vote on report in status: {report.status.value}")
            if not report.voting_open:
                raise InvalidStateError("voting_closed", f"Report {report_id} is not open for voting")
            if voter_id in (report.reporter_user_id, report.reported_user_id):
                raise EligibilityDenied("conflict_of_interest", "Parties to a report cannot vote on it")
            if self.store.count(VOTES, report_id=report_id, voter_id=voter_id):
                raise EligibilityDenied("already_voted", "User has already voted on this report")

            now = self.clock()
            ballot = ReportVote(
                vote_id=f"VOTE-{uuid.uuid4().hex[:12]}",
                report_id=report_id,
                voter_id=voter_id,
                vote=vote,
                created_at=now,
                reasoning=reasoning,
            )
            report.community_votes += 1
            report.vote_tally[vote.value] = report.vote_tally.get(vote.value, 0) + 1

            consensus = None
            if report.community_votes >= self.config["report_voting_threshold"]:
                consensus = self.evaluate_consensus(report.vote_tally)
                report.community_consensus = consensus
            report.updated_at = now

            self.store.put(VOTES, ballot.vote_id, ballot)
            self.store.put(REPORTS, report.report_id, report)

        if consensus is not None:
            logger.info(f"Community consensus for report {report_id}: {consensus.value}")
            report = self._apply_consensus(report_id, consensus)
        return report

    def evaluate_consensus(self, tally: Dict[str, int]) -> Consensus:
        """多数票达到一致率阈值才形成共识"""
        total = sum(tally.values())
        if total == 0:
            return Consensus.INCONCLUSIVE
        for option in (VoteOption.CHEAT, VoteOption.SUSPICIOUS, VoteOption.LEGITIMATE):
            if tally.get(option.value, 0) / total >= self.config["consensus_threshold"]:
                return Consensus(option.value)
        return Consensus.INCONCLUSIVE

    def _apply_consensus(self, report_id: str, consensus: Consensus) -> CommunityReport:
        handler = CONSENSUS_HANDLERS[consensus]
        return handler(self, report_id)

    def _consensus_cheat(self, report_id: str) -> CommunityReport:
        report = self._fold_into_case(report_id, "community_consensus")
        fire_and_forget("reputation.reward", self.reputation.adjust_reputation, report.reporter_user_id,
                        self.config["accurate_report_reward"], f"Community confirmed report {report_id}")
        return report

    def _consensus_suspicious(self, report_id: str) -> CommunityReport:
        with self._report_lock(report_id):
            report = self._get_report(report_id)
            now = self.clock()
            report.status = ReportStatus.RESOLVED
            report.resolution = {"action": "increase_monitoring", "source": "community_consensus",
                                 "at": dump_time(now)}
            report.resolved_at = now
            report.voting_open = False
            report.updated_at = now
            self.store.put(REPORTS, report.report_id, report)
        fire_and_forget("enforcement.monitoring", self.enforcement.increase_monitoring,
                        report.reported_user_id, self.config["suspicious_monitoring_days"],
                        f"Community consensus on report {report_id}")
        return report

    def _consensus_legitimate(self, report_id: str) -> CommunityReport:
        with self._report_lock(report_id):
            report = self._get_report(report_id)
            now = self.clock()
            report.status = ReportStatus.DISMISSED
            report.resolution = {"action": "dismiss", "source": "community_consensus", "at": dump_time(now)}
            report.resolved_at = now
            report.voting_open = False
            report.updated_at = now
            self.store.put(REPORTS, report.report_id, report)
        fire_and_forget("reputation.penalty", self.reputation.adjust_reputation, report.reporter_user_id,
                        self.config["false_report_penalty"], f"Community dismissed report {report_id}")
        return report

    def _consensus_inconclusive(self, report_id: str) -> CommunityReport:
        # 保持 pending，等待版主
        return self._get_report(report_id)

    # =========================================================================
    # Moderation
    # =========================================================================
    def register_moderator(self, moderator_id: str, tier: Tier,
                           specializations: Optional[List[str]] = None):
        return self.moderators.register(moderator_id, tier, specializations)

    def moderate_report(self, report_id: str, moderator_id: str,
                        action: ModerationAction) -> CommunityReport:
        logger.info(f"Moderating report {report_id} by {moderator_id}: {action.action_type.value}")
        moderator = self._validate_moderator(moderator_id)
        if action.action_type not in TIER_PERMISSIONS[moderator.tier]:
            raise EligibilityDenied(
                "action_not_permitted",
                f"Moderator does not have permission for action: {action.action_type.value}",
                {"tier": moderator.tier.value}
            )

        with self._report_lock(report_id):
            report = self._get_report(report_id)
            if not report.is_open:
                raise InvalidStateError("invalid_state",
                                        f"Cannot moderate report in status: {report.status.value}")
            now = self.clock()
            report.status = ReportStatus.RESOLVED
            report.resolution = {**action.to_dict(), "moderator_id": moderator_id, "at": dump_time(now)}
            report.resolved_at = now
            report.voting_open = False
            report.assigned_moderator = moderator_id
            report.updated_at = now
            self.store.put(REPORTS, report.report_id, report)

        self._execute_action(report, action, moderator_id)

        delta = self.config["false_report_penalty"] if action.action_type == ModerationActionType.DISMISS \
            else self.config["accurate_report_reward"]
        fire_and_forget("reputation.adjust", self.reputation.adjust_reputation, report.reporter_user_id,
                        delta, f"Report {report_id} moderated: {action.action_type.value}")
        for recipient in (report.reporter_user_id, report.reported_user_id):
            fire_and_forget("notify.moderation", self.notifications.notify, recipient,
                            "report_moderated", {"report_id": report_id,
                                                 "action": action.action_type.value})
        logger.info(f"Report {report_id} moderated successfully")
        return self._get_report(report_id)

    def _execute_action(self, report: CommunityReport, action: ModerationAction, moderator_id: str):
        user_id = report.reported_user_id
        action_type = action.action_type
        if action_type == ModerationActionType.DISMISS:
            return
        if action_type == ModerationActionType.WARN:
            fire_and_forget("enforcement.warning", self.enforcement.warn_user, user_id, action.reasoning,
                            source_id=report.report_id, issued_by=moderator_id)
        elif action_type == ModerationActionType.RESTRICT:
            fire_and_forget("enforcement.restrict", self.enforcement.restrict_user, user_id,
                            action.duration or "1d", action.reasoning,
                            source_id=report.report_id, issued_by=moderator_id)
        elif action_type == ModerationActionType.BAN:
            fire_and_forget("enforcement.ban", self.enforcement.ban_user, user_id,
                            action.duration or "7d", action.reasoning,
                            source_id=report.report_id, issued_by=moderator_id)
        elif action_type == ModerationActionType.ESCALATE:
            self._fold_into_case(report.report_id, moderator_id)

    def _fold_into_case(self, report_id: str, actor: str) -> CommunityReport:
        """举报并入审核案件（新建或加强已有案件）"""
        with self._report_lock(report_id):
            report = self._get_report(report_id)
            if report.status == ReportStatus.PENDING:
                report.status = ReportStatus.ESCALATED
                report.escalation = {"escalated_by": actor, "escalated_at": dump_time(self.clock()),
                                     "reason": "Forwarded to anti-cheat review", "target_level": "review_case"}
            report.voting_open = False
            report.updated_at = self.clock()
            self.store.put(REPORTS, report.report_id, report)

        if self.case_opener is None:
            logger.warning(f"No case opener configured; report {report_id} not forwarded")
            return report

        summary = {
            "report_type": report.report_type.value,
            "reason": report.reason,
            "community_consensus": report.community_consensus.value if report.community_consensus else None,
            "vote_tally": dict(report.vote_tally),
        }
        case = self.case_opener(report.report_id, report.reported_user_id, report.session_id,
                                report.puzzle_id, report.severity, summary)

        with self._report_lock(report_id):
            report = self._get_report(report_id)
            report.linked_case_id = case.case_id
            report.updated_at = self.clock()
            self.store.put(REPORTS, report.report_id, report)
        logger.info(f"Report {report_id} folded into review case {case.case_id}")
        return report

    def escalate_report(self, report_id: str, escalated_by: str, reason: str,
                        target_level: ReportEscalationLevel) -> CommunityReport:
        target_level = ReportEscalationLevel(target_level)
        required = self.config["reputation_thresholds"]["can_escalate"]
        is_moderator = self.moderators.get(escalated_by) is not None
        if not is_moderator and self.reputation.get_reputation(escalated_by) < required:
            raise EligibilityDenied("insufficient_reputation", "Insufficient reputation to escalate reports",
                                    {"required": required})

        with self._report_lock(report_id):
            report = self._get_report(report_id)
            if not report.is_open:
                raise InvalidStateError("invalid_state",
                                        f"Cannot escalate report in status: {report.status.value}")
            now = self.clock()
            report.escalation = {
                "escalated_by": escalated_by,
                "escalated_at": dump_time(now),
                "reason": reason,
                "target_level": target_level.value,
                "previous_moderator": report.assigned_moderator,
            }
            report.status = ReportStatus.ESCALATED
            report.assigned_moderator = None
            report.voting_open = False
            report.updated_at = now
            self.store.put(REPORTS, report.report_id, report)

        logger.warning(f"Report {report_id} escalated to {target_level.value} level by {escalated_by}: {reason}")
        return self._try_auto_assign(report_id, min_tier=Tier(target_level.value))

    def _validate_moderator(self, moderator_id: str):
        moderator = self.moderators.get(moderator_id)
        if moderator is None or not moderator.active:
            raise NotFoundError("moderator_not_found", f"Moderator {moderator_id} not found")
        required = self.config["reputation_thresholds"]["can_moderate"]
        if self.reputation.get_reputation(moderator_id) < required:
            raise EligibilityDenied("insufficient_reputation", "Insufficient reputation to moderate reports",
                                    {"required": required})
        return moderator

    # =========================================================================
    # Queries & Analysis
    # =========================================================================
    def get_report(self, report_id: str) -> CommunityReport:
        return self._get_report(report_id)

    def list_reports(self, status: Optional[ReportStatus] = None,
                     reporter_user_id: Optional[str] = None,
                     reported_user_id: Optional[str] = None) -> List[CommunityReport]:
        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = ReportStatus(status).value
        if reporter_user_id:
            filters["reporter_user_id"] = reporter_user_id
        if reported_user_id:
            filters["reported_user_id"] = reported_user_id
        reports = self.store.find(REPORTS, **filters)
        reports.sort(key=lambda r: (-r.priority, r.created_at))
        return reports

    def get_votes(self, report_id: str) -> List[ReportVote]:
        votes = self.store.find(VOTES, report_id=report_id)
        votes.sort(key=lambda v: v.created_at)
        return votes

    def get_report_analysis(self, report_id: str) -> Dict[str, Any]:
        report = self._get_report(report_id)
        now = self.clock()
        similar = [
            r for r in self.store.find(REPORTS, reported_user_id=report.reported_user_id)
            if r.report_id != report.report_id
        ]
        recent = [r for r in similar if r.created_at >= now - timedelta(hours=24)]
        actioned = [
            r for r in similar
            if r.resolution and r.resolution.get("action_type") not in (None, ModerationActionType.DISMISS.value)
        ]
        votes = report.community_votes
        agreement = max(report.vote_tally.values()) / votes if votes else 0.0

        if report.community_consensus == Consensus.CHEAT or len(actioned) >= 2:
            recommended = "escalate"
        elif report.community_consensus == Consensus.LEGITIMATE:
            recommended = "dismiss"
        elif report.severity.at_least(Severity.HIGH):
            recommended = "investigate"
        else:
            recommended = "await_votes" if report.voting_open else "investigate"

        return {
            "report_id": report.report_id,
            "report_summary": {
                "type": report.report_type.value,
                "severity": report.severity.value,
                "priority": report.priority,
                "status": report.status.value,
                "reported_user_id": report.reported_user_id,
            },
            "evidence_analysis": {
                "screenshots": len(report.evidence.screenshots),
                "has_video": bool(report.evidence.video_url),
                "witnesses": len(report.evidence.witnesses),
                "items": report.evidence.item_count,
            },
            "community_feedback": {
                "votes": votes,
                "tally": dict(report.vote_tally),
                "consensus": report.community_consensus.value if report.community_consensus else None,
                "agreement": round(agreement, 3),
            },
            "similar_reports": [
                {"report_id": r.report_id, "type": r.report_type.value, "status": r.status.value}
                for r in sorted(similar, key=lambda r: r.created_at, reverse=True)[:10]
            ],
            "risk_assessment": {
                "reports_last_24h": len(recent) + 1,
                "previously_actioned": len(actioned),
                "auto_restricted": report.auto_mod_action is not None,
            },
            "recommended_action": recommended,
            "confidence_level": round(min(1.0, 0.3 + 0.1 * report.evidence.item_count + 0.5 * agreement), 3),
            "priority_justification": f"{report.severity.value} severity {report.report_type.value} report",
            "estimated_resolution_hours": RESOLUTION_HOURS_BY_PRIORITY.get(report.priority, 24),
        }

    def get_community_metrics(self, period: str = "week") -> Dict[str, Any]:
        if period not in PERIOD_DAYS:
            raise ValidationFailure("invalid_period", f"Unknown period: {period}",
                                    {"allowed": sorted(PERIOD_DAYS)})
        now = self.clock()
        start = now - timedelta(days=PERIOD_DAYS[period])
        reports = [r for r in self.store.find(REPORTS) if r.created_at >= start]
        closed = [r for r in reports if r.status in (ReportStatus.RESOLVED, ReportStatus.DISMISSED)]
        resolution_hours = [
            (r.resolved_at - r.created_at).total_seconds() / 3600 for r in closed if r.resolved_at
        ]
        voters = {v.voter_id for v in self.store.find(VOTES) if v.created_at >= start}
        with_consensus = [r for r in reports if r.community_consensus
                          and r.community_consensus != Consensus.INCONCLUSIVE]
        reporters = Counter(r.reporter_user_id for r in reports)

        total = len(reports)
        return {
            "period": period,
            "start_date": start.isoformat(),
            "end_date": now.isoformat(),
            "total_reports": total,
            "resolved_reports": len(closed),
            "pending_reports": total - len(closed),
            "resolution_rate": len(closed) / total if total else 0.0,
            "average_resolution_hours": (sum(resolution_hours) / len(resolution_hours)
                                         if resolution_hours else 0.0),
            "community_participation": len(voters),
            "consensus_rate": len(with_consensus) / total if total else 0.0,
            "reports_by_type": dict(Counter(r.report_type.value for r in reports)),
            "severity_distribution": dict(Counter(r.severity.value for r in reports)),
            "top_reporters": [{"user_id": u, "reports": n} for u, n in reporters.most_common(5)],
        }

    def _get_report(self, report_id: str) -> CommunityReport:
        report = self.store.get(REPORTS, report_id)
        if report is None:
            raise NotFoundError("report_not_found", f"Report {report_id} not found", {"report_id": report_id})
        return report


CONSENSUS_HANDLERS: Dict[Consensus, Callable[[CommunityModeration, str], CommunityReport]] = {
    Consensus.CHEAT: CommunityModeration._consensus_cheat,
    Consensus.SUSPICIOUS: CommunityModeration._consensus_suspicious,
    Consensus.LEGITIMATE: CommunityModeration._consensus_legitimate,
    Consensus.INCONCLUSIVE: CommunityModeration._consensus_inconclusive,
}

assert set(CONSENSUS_HANDLERS) == set(Consensus), "every consensus needs a handler"
