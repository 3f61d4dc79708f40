"""
PuzzleGuard Admin API Routes
审核员 / 版主 / 管理员接口

核心功能:
- 检测记录与审核队列
- 案件分配、审核、升级
- 申诉复审
- 举报处理与升级
- 分析面板与定时清扫
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from auth.src.middleware import (
    AuthContext, UserRole, require_admin, require_moderator, require_reviewer, require_role
)
from appeal.src.appeal_manager import AppealStatus
from community.src.community_moderation import (
    ModerationAction, ModerationActionType, ReportEscalationLevel, ReportStatus
)
from review.src.case_manager import (
    CaseStatus, EscalationLevel, RecommendedAction, ReviewDecision, Verdict
)
from review.src.reviewer_pool import Tier
from safety.src.trust_safety_service import TrustSafetyService, get_trust_safety_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin/anti-cheat")

require_senior = require_role([UserRole.SENIOR])


# =============================================================================
# Request Models
# =============================================================================
class RegisterStaffRequest(BaseModel):
    staff_id: str
    tier: Tier
    specializations: List[str] = Field(default_factory=list)
    max_load: Optional[int] = Field(default=None, ge=1)


class AssignReviewerRequest(BaseModel):
    reviewer_id: Optional[str] = Field(default=None, description="Defaults to the caller")


class SubmitReviewRequest(BaseModel):
    verdict: Optional[Verdict] = None
    confidence: float
    reasoning: str = ""
    recommended_actions: List[RecommendedAction] = Field(default_factory=list)
    ban_duration: Optional[str] = None
    invalidation_scope: Optional[str] = None


class EscalateCaseRequest(BaseModel):
    reason: str
    target_level: EscalationLevel = EscalationLevel.SENIOR


class ReviewAppealRequest(BaseModel):
    notes: Optional[str] = None


class ResolveReportRequest(BaseModel):
    action_type: ModerationActionType
    reasoning: str
    duration: Optional[str] = None


class EscalateReportRequest(BaseModel):
    reason: str
    target_level: ReportEscalationLevel = ReportEscalationLevel.SENIOR


class SweepRequest(BaseModel):
    now: Optional[datetime] = None


# =============================================================================
# Detections & Reviews
# =============================================================================
@router.get("/detections", tags=["AntiCheat"])
async def list_detections(
    user_id: Optional[str] = Query(default=None),
    flagged_only: bool = Query(default=False),
    auth: AuthContext = Depends(require_moderator),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    detections = service.list_detections(user_id=user_id, flagged_only=flagged_only)
    return {"total": len(detections), "detections": [d.to_dict() for d in detections]}


@router.get("/reviews", tags=["Admin"])
async def list_reviews(
    status: Optional[CaseStatus] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    queue_tier: Optional[Tier] = Query(default=None, description="Show the claimable queue for a tier"),
    auth: AuthContext = Depends(require_reviewer),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    if queue_tier is not None:
        cases = service.cases.review_queue(queue_tier)
    else:
        cases = service.cases.list_cases(status=status, user_id=user_id)
    return {"total": len(cases), "cases": [c.to_dict() for c in cases]}


@router.get("/reviews/{case_id}", tags=["Admin"])
async def get_review(
    case_id: str,
    auth: AuthContext = Depends(require_reviewer),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    return service.cases.get_case(case_id).to_dict()


@router.post("/reviews/{case_id}/assign", tags=["Admin"])
async def assign_review(
    case_id: str,
    request: AssignReviewerRequest,
    auth: AuthContext = Depends(require_reviewer),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    case = service.cases.assign_reviewer(case_id, request.reviewer_id or auth.user_id, auth.user_id)
    return case.to_dict()


@router.post("/reviews/{case_id}/start", tags=["Admin"])
async def start_review(
    case_id: str,
    auth: AuthContext = Depends(require_reviewer),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    """开始审核，返回审核分析"""
    return service.cases.start_review(case_id, auth.user_id).to_dict()


@router.post("/reviews/{case_id}/submit", tags=["Admin"])
async def submit_review(
    case_id: str,
    request: SubmitReviewRequest,
    auth: AuthContext = Depends(require_reviewer),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    decision = ReviewDecision(
        verdict=request.verdict,
        confidence=request.confidence,
        reasoning=request.reasoning,
        recommended_actions=tuple(request.recommended_actions),
        ban_duration=request.ban_duration,
        invalidation_scope=request.invalidation_scope,
    )
    return service.cases.submit_review(case_id, auth.user_id, decision).to_dict()


@router.post("/reviews/{case_id}/escalate", tags=["Admin"])
async def escalate_review(
    case_id: str,
    request: EscalateCaseRequest,
    auth: AuthContext = Depends(require_reviewer),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    case = service.cases.escalate_case(case_id, auth.user_id, request.reason, request.target_level)
    return case.to_dict()


# =============================================================================
# Appeals
# =============================================================================
@router.get("/appeals", tags=["Appeals"])
async def list_appeals(
    status: Optional[AppealStatus] = Query(default=None),
    auth: AuthContext = Depends(require_senior),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    appeals = service.appeals.list_appeals(status=status)
    return {"total": len(appeals), "appeals": [a.to_dict() for a in appeals]}


@router.post("/appeals/{appeal_id}/assign", tags=["Appeals"])
async def assign_appeal(
    appeal_id: str,
    request: AssignReviewerRequest,
    auth: AuthContext = Depends(require_senior),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    appeal = service.appeals.assign_appeal_reviewer(appeal_id, request.reviewer_id or auth.user_id)
    return appeal.to_dict()


@router.post("/appeals/{appeal_id}/review", tags=["Appeals"])
async def review_appeal(
    appeal_id: str,
    request: ReviewAppealRequest,
    auth: AuthContext = Depends(require_senior),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    decision = service.appeals.review_appeal(appeal_id, auth.user_id, request.notes)
    return decision.to_dict()


# =============================================================================
# Community Reports
# =============================================================================
@router.get("/reports", tags=["Reports"])
async def list_reports(
    status: Optional[ReportStatus] = Query(default=None),
    auth: AuthContext = Depends(require_moderator),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    reports = service.community.list_reports(status=status)
    return {"total": len(reports), "reports": [r.to_dict() for r in reports]}


@router.get("/reports/{report_id}", tags=["Reports"])
async def get_report_analysis(
    report_id: str,
    auth: AuthContext = Depends(require_moderator),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    return service.community.get_report_analysis(report_id)


@router.post("/reports/{report_id}/resolve", tags=["Reports"])
async def resolve_report(
    report_id: str,
    request: ResolveReportRequest,
    auth: AuthContext = Depends(require_moderator),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    action = ModerationAction(
        action_type=request.action_type,
        reasoning=request.reasoning,
        duration=request.duration,
    )
    return service.community.moderate_report(report_id, auth.user_id, action).to_dict()


@router.post("/reports/{report_id}/escalate", tags=["Reports"])
async def escalate_report(
    report_id: str,
    request: EscalateReportRequest,
    auth: AuthContext = Depends(require_moderator),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    report = service.community.escalate_report(report_id, auth.user_id, request.reason, request.target_level)
    return report.to_dict()


# =============================================================================
# Staff, Analytics & Sweeps
# =============================================================================
@router.post("/reviewers", tags=["Admin"])
async def register_reviewer(
    request: RegisterStaffRequest,
    auth: AuthContext = Depends(require_admin),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    reviewer = service.reviewers.register(
        request.staff_id, request.tier, request.specializations, request.max_load
    )
    return reviewer.to_dict()


@router.post("/moderators", tags=["Admin"])
async def register_moderator(
    request: RegisterStaffRequest,
    auth: AuthContext = Depends(require_admin),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    moderator = service.community.register_moderator(
        request.staff_id, request.tier, request.specializations
    )
    return moderator.to_dict()


@router.get("/analytics", tags=["Admin"])
async def get_analytics(
    period: str = Query(default="week", description="Community metrics period: day, week or month"),
    auth: AuthContext = Depends(require_moderator),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    return {
        "dashboard": service.analytics.get_dashboard(),
        "false_positive_flags": service.analytics.get_false_positive_flags(),
        "community": service.community.get_community_metrics(period),
        "statistics": service.get_statistics(),
    }


@router.post("/sweeps", tags=["Admin"])
async def run_sweep(
    request: SweepRequest,
    auth: AuthContext = Depends(require_admin),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    """手动触发一次清扫（超时升级 + 指标快照）"""
    now = request.now
    if now is not None and now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return service.sweeper.run_once(now).to_dict()
