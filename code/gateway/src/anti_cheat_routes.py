"""
PuzzleGuard Anti-Cheat API Routes
玩家侧反作弊接口

核心功能:
- 解题提交验证
- 本人检测记录
- 申诉提交与查询
- 社区举报与投票
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth.src.middleware import AuthContext, require_player
from appeal.src.appeal_manager import AppealEvidence, EvidenceType
from community.src.community_moderation import (
    ReportEvidence, ReportSubmission, ReportType, VoteOption
)
from safety.src.trust_safety_service import TrustSafetyService, get_trust_safety_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/anti-cheat")


# =============================================================================
# Request Models
# =============================================================================
class ValidateSolutionRequest(BaseModel):
    session_id: str = Field(..., description="Puzzle session identifier")
    telemetry: Dict[str, Any] = Field(..., description="Move log, timing and device info")


class AppealEvidenceModel(BaseModel):
    type: EvidenceType
    description: str = ""
    documentation: List[str] = Field(default_factory=list)
    witnesses: List[str] = Field(default_factory=list)
    expert_opinion: Optional[str] = None
    verified_source: bool = False
    independently_verified: bool = False
    is_new: bool = False
    relevance: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def to_evidence(self) -> AppealEvidence:
        return AppealEvidence(
            evidence_type=self.type,
            description=self.description,
            documentation=list(self.documentation),
            witnesses=list(self.witnesses),
            expert_opinion=self.expert_opinion,
            verified_source=self.verified_source,
            independently_verified=self.independently_verified,
            is_new=self.is_new,
            relevance=self.relevance,
            confidence=self.confidence,
        )


class SubmitAppealRequest(BaseModel):
    case_id: str
    reason: str
    evidence: AppealEvidenceModel
    on_behalf_of: Optional[str] = Field(default=None, description="Penalized user when filed by an advocate")


class WithdrawAppealRequest(BaseModel):
    reason: str = "Withdrawn by user"


class ReportEvidenceModel(BaseModel):
    screenshots: List[str] = Field(default_factory=list)
    video_url: Optional[str] = None
    witnesses: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class SubmitReportRequest(BaseModel):
    reported_user_id: str
    report_type: ReportType
    reason: str
    description: str
    evidence: ReportEvidenceModel = Field(default_factory=ReportEvidenceModel)
    session_id: Optional[str] = None
    puzzle_id: Optional[str] = None


class VoteRequest(BaseModel):
    vote: VoteOption
    reasoning: Optional[str] = None


# =============================================================================
# Detections
# =============================================================================
@router.post("/validate-solution", tags=["AntiCheat"])
async def validate_solution(
    request: ValidateSolutionRequest,
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    """验证一次解题提交"""
    return service.validate_solution(auth.user_id, request.session_id, request.telemetry)


@router.get("/detections", tags=["AntiCheat"])
async def list_my_detections(
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    detections = service.list_detections(user_id=auth.user_id)
    return {
        "user_id": auth.user_id,
        "total": len(detections),
        "detections": [d.to_dict() for d in detections],
    }


# =============================================================================
# Appeals
# =============================================================================
@router.post("/appeals", tags=["Appeals"])
async def submit_appeal(
    request: SubmitAppealRequest,
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    """提交申诉（本人或代理人）"""
    if request.on_behalf_of and request.on_behalf_of != auth.user_id:
        user_id, advocate_id = request.on_behalf_of, auth.user_id
    else:
        user_id, advocate_id = auth.user_id, None
    appeal = service.appeals.submit_appeal(
        request.case_id, user_id, request.reason, request.evidence.to_evidence(),
        advocate_id=advocate_id
    )
    return appeal.to_dict()


@router.get("/appeals", tags=["Appeals"])
async def list_my_appeals(
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    appeals = service.appeals.list_user_appeals(auth.user_id)
    return {"user_id": auth.user_id, "total": len(appeals), "appeals": [a.to_dict() for a in appeals]}


@router.get("/appeals/{appeal_id}", tags=["Appeals"])
async def get_appeal_status(
    appeal_id: str,
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    return service.appeals.get_appeal_status(appeal_id)


# =============================================================================
# Community Reports
# =============================================================================
@router.post("/reports", tags=["Reports"])
async def submit_report(
    request: SubmitReportRequest,
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    submission = ReportSubmission(
        report_type=request.report_type,
        reason=request.reason,
        description=request.description,
        evidence=ReportEvidence(
            screenshots=list(request.evidence.screenshots),
            video_url=request.evidence.video_url,
            witnesses=list(request.evidence.witnesses),
            notes=request.evidence.notes,
        ),
        session_id=request.session_id,
        puzzle_id=request.puzzle_id,
    )
    report = service.community.submit_report(auth.user_id, request.reported_user_id, submission)
    return report.to_dict()


@router.get("/reports", tags=["Reports"])
async def list_my_reports(
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    reports = service.community.list_reports(reporter_user_id=auth.user_id)
    return {"user_id": auth.user_id, "total": len(reports), "reports": [r.to_dict() for r in reports]}


@router.post("/reports/{report_id}/votes", tags=["Reports"])
async def vote_on_report(
    report_id: str,
    request: VoteRequest,
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    report = service.community.vote_on_report(report_id, auth.user_id, request.vote, request.reasoning)
    return report.to_dict()


@router.post("/appeals/{appeal_id}/withdraw", tags=["Appeals"])
async def withdraw_appeal(
    appeal_id: str,
    request: WithdrawAppealRequest,
    auth: AuthContext = Depends(require_player),
    service: TrustSafetyService = Depends(get_trust_safety_service)
):
    appeal = service.appeals.withdraw_appeal(appeal_id, auth.user_id, request.reason)
    return appeal.to_dict()
