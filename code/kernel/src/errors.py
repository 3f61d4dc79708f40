"""
PuzzleGuard Error Taxonomy
统一错误类型 - 所有拒绝的操作都带有可机器判读的 reason

NotFound / InvalidState / ValidationFailure / EligibilityDenied / CapacityExceeded
"""
from typing import Any, Dict, Optional


class TrustSafetyError(Exception):
    """所有业务错误的基类"""

    def __init__(self, reason: str, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.message = message or reason.replace("_", " ")
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "reason": self.reason,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(TrustSafetyError):
    """未知的 case / appeal / report / reviewer"""


class InvalidStateError(TrustSafetyError):
    """操作不在其合法状态内"""


class ValidationFailure(TrustSafetyError):
    """决定、证据或举报内容格式错误"""


class EligibilityDenied(TrustSafetyError):
    """限流、信誉门槛、申诉窗口过期、重复提交"""


class CapacityExceeded(TrustSafetyError):
    """审核员 / 版主负载已达上限"""
