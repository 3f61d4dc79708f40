"""
Tests for header-based caller identity and role checks.
"""
import asyncio

import pytest
from fastapi import HTTPException

from auth.src.middleware import (
    AuthContext, UserRole, get_current_user, require_auth, require_role
)


def run(coro):
    return asyncio.run(coro)


class TestIdentity:
    def test_anonymous(self):
        auth = run(get_current_user(None, None))
        assert not auth.is_authenticated

    def test_role_defaults_to_player(self):
        auth = run(get_current_user("user-1", None))
        assert auth.role == "player"
        assert auth.level == 0

    def test_role_is_case_insensitive(self):
        assert run(get_current_user("user-1", "Senior")).role == "senior"

    def test_unknown_role_has_no_level(self):
        assert AuthContext("user-1", "wizard", True).level == -1

    def test_require_auth_rejects_anonymous(self):
        with pytest.raises(HTTPException) as exc:
            run(require_auth(None, "admin"))
        assert exc.value.status_code == 401


class TestRoles:
    @pytest.mark.parametrize("role", ["reviewer", "senior", "expert", "admin"])
    def test_higher_roles_pass(self, role):
        checker = require_role([UserRole.REVIEWER])
        assert run(checker("user-1", role)).role == role

    @pytest.mark.parametrize("role", ["player", "moderator", "wizard"])
    def test_lower_roles_forbidden(self, role):
        checker = require_role([UserRole.REVIEWER])
        with pytest.raises(HTTPException) as exc:
            run(checker("user-1", role))
        assert exc.value.status_code == 403

    def test_lowest_listed_role_wins(self):
        checker = require_role([UserRole.ADMIN, UserRole.MODERATOR])
        assert run(checker("mod-1", "moderator")).user_id == "mod-1"
