"""
PuzzleGuard Auth Middleware
FastAPI 身份依赖 - 从上游网关注入的请求头读取调用者身份

The trust-and-safety core does not authenticate anyone: the platform gateway
in front of it has already done so and forwards ``X-User-Id`` and
``X-User-Role``.
"""
import logging
from enum import Enum
from typing import List, Optional

from fastapi import Header, HTTPException

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    """调用者角色"""
    PLAYER = "player"
    MODERATOR = "moderator"
    REVIEWER = "reviewer"
    SENIOR = "senior"
    EXPERT = "expert"
    ADMIN = "admin"


ROLE_HIERARCHY = {
    UserRole.PLAYER: 0,
    UserRole.MODERATOR: 1,
    UserRole.REVIEWER: 2,
    UserRole.SENIOR: 3,
    UserRole.EXPERT: 4,
    UserRole.ADMIN: 5,
}


class AuthContext:
    """认证上下文，存储当前请求的用户信息"""

    def __init__(self, user_id: str = None, role: str = None, is_authenticated: bool = False):
        self.user_id = user_id
        self.role = role
        self.is_authenticated = is_authenticated

    @property
    def level(self) -> int:
        try:
            return ROLE_HIERARCHY[UserRole(self.role)]
        except ValueError:
            return -1

    def __repr__(self):
        return f"AuthContext(user_id={self.user_id}, role={self.role}, authenticated={self.is_authenticated})"


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None)
) -> AuthContext:
    """获取当前用户（可选认证）"""
    if not x_user_id:
        return AuthContext(is_authenticated=False)
    return AuthContext(
        user_id=x_user_id,
        role=(x_user_role or UserRole.PLAYER.value).lower(),
        is_authenticated=True
    )


async def require_auth(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None)
) -> AuthContext:
    """要求调用者身份；缺少 X-User-Id 时返回 401"""
    auth = await get_current_user(x_user_id, x_user_role)
    if not auth.is_authenticated:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return auth


def require_role(required_roles: List[UserRole]):
    """
    要求特定角色的依赖工厂

    Usage:
        @app.get("/v1/admin/anti-cheat/reviews")
        async def list_reviews(auth: AuthContext = Depends(require_role([UserRole.REVIEWER]))):
            ...
    """
    required_level = min(ROLE_HIERARCHY[UserRole(r)] for r in required_roles)

    async def role_checker(
        x_user_id: Optional[str] = Header(default=None),
        x_user_role: Optional[str] = Header(default=None)
    ) -> AuthContext:
        auth = await require_auth(x_user_id, x_user_role)
        if auth.level < required_level:
            logger.warning(f"Forbidden: {auth.user_id} ({auth.role}) needs {[UserRole(r).value for r in required_roles]}")
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient role, one of {[UserRole(r).value for r in required_roles]} required"
            )
        return auth

    return role_checker


# 预定义的角色检查器
require_player = require_role([UserRole.PLAYER])
require_moderator = require_role([UserRole.MODERATOR])
require_reviewer = require_role([UserRole.REVIEWER])
require_admin = require_role([UserRole.ADMIN])
