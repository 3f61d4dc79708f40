"""
Tests for punishments, duration parsing and result restoration.
"""
from datetime import timedelta

import pytest

from safety.src.enforcement_service import (
    EnforcementService, PunishmentType, halve_duration, parse_duration
)


@pytest.fixture
def enforcement(clock):
    return EnforcementService(clock=clock)


class TestDurations:
    @pytest.mark.parametrize("text,expected", [
        ("30d", timedelta(days=30)),
        ("24h", timedelta(hours=24)),
        ("2w", timedelta(weeks=2)),
        ("15m", timedelta(minutes=15)),
        (" 7D ", timedelta(days=7)),
    ])
    def test_parse(self, text, expected):
        assert parse_duration(text) == expected

    def test_permanent_has_no_duration(self):
        assert parse_duration("permanent") is None
        assert parse_duration(None) is None

    def test_invalid_duration(self):
        with pytest.raises(ValueError):
            parse_duration("forever-ish")

    @pytest.mark.parametrize("text,expected", [
        ("30d", "15d"),
        ("1d", "12h"),
        ("3h", "1h"),
        ("1h", "1h"),
        ("permanent", "permanent"),
    ])
    def test_halve(self, text, expected):
        assert halve_duration(text) == expected


class TestPunishments:
    def test_temporary_ban_expires(self, enforcement, clock):
        ban = enforcement.ban_user("user-1", "1d", "Cheating", source_id="CASE-1", issued_by="rev-1")
        assert ban.punishment_type == PunishmentType.TEMPORARY_BAN
        assert ban.end_time == clock() + timedelta(days=1)
        assert enforcement.is_banned("user-1")

        clock.advance(days=1)
        assert not enforcement.is_banned("user-1")
        assert enforcement.get_user_punishments("user-1", active_only=True) == []

    def test_permanent_ban(self, enforcement, clock):
        ban = enforcement.ban_user("user-1", "permanent", "Botting")
        assert ban.punishment_type == PunishmentType.PERMANENT_BAN
        assert ban.end_time is None
        clock.advance(days=3650)
        assert enforcement.is_banned("user-1")

    def test_restriction(self, enforcement):
        enforcement.restrict_user("user-1", "1d", "Auto moderation")
        assert enforcement.is_restricted("user-1")
        assert not enforcement.is_banned("user-1")

    def test_revoke_by_source(self, enforcement):
        enforcement.ban_user("user-1", "30d", "Case A", source_id="CASE-A")
        enforcement.ban_user("user-1", "7d", "Case B", source_id="CASE-B")
        revoked = enforcement.revoke_punishments("user-1", "admin", "Appeal approved", source_id="CASE-A")
        assert [p.source_id for p in revoked] == ["CASE-A"]
        assert enforcement.is_banned("user-1")
        assert revoked[0].revoked_reason == "Appeal approved"

    def test_remove_restrictions_keeps_permanent_ban(self, enforcement):
        enforcement.ban_user("user-1", "permanent", "Botting")
        enforcement.restrict_user("user-1", "1d", "Reports")
        enforcement.remove_restrictions("user-1", "rev-1", "Cleared")
        assert enforcement.is_banned("user-1")
        assert not enforcement.is_restricted("user-1")

    def test_revoke_nothing_writes_no_audit(self, enforcement):
        assert enforcement.revoke_punishments("user-1", "admin", "None") == []
        assert enforcement.get_audit_logs(action="REVOKE_PUNISHMENT") == []


class TestResults:
    def test_full_restore_revokes_invalidation(self, enforcement):
        enforcement.invalidate_results("user-1", "session", source_id="CASE-1")
        enforcement.restore_results("user-1", "CASE-1")
        assert enforcement.get_invalidation("CASE-1").restored == "full"
        assert enforcement.get_user_punishments("user-1", active_only=True) == []

    def test_partial_restore_keeps_invalidation(self, enforcement):
        enforcement.invalidate_results("user-1", "session", source_id="CASE-1")
        enforcement.restore_results("user-1", "CASE-1", partial=True)
        assert enforcement.get_invalidation("CASE-1").restored == "partial"
        active = enforcement.get_user_punishments("user-1", active_only=True)
        assert [p.punishment_type for p in active] == [PunishmentType.RESULT_INVALIDATION]

    def test_restore_other_users_results_is_ignored(self, enforcement):
        enforcement.invalidate_results("user-1", "session", source_id="CASE-1")
        enforcement.restore_results("user-2", "CASE-1")
        assert enforcement.get_invalidation("CASE-1").restored == "none"


class TestMonitoringAndAudit:
    def test_watch_list_and_monitoring_expire(self, enforcement, clock):
        enforcement.add_to_watch_list("user-1", 30, "Inconclusive review")
        enforcement.increase_monitoring("user-2", 14, "Suspicious")
        assert enforcement.is_watched("user-1")
        assert enforcement.is_monitored("user-2")
        assert not enforcement.is_monitored("user-1")

        clock.advance(days=31)
        assert not enforcement.is_watched("user-1")
        assert not enforcement.is_monitored("user-2")

    def test_audit_log_filters(self, enforcement):
        enforcement.warn_user("user-1", "Be nice", issued_by="mod-1")
        enforcement.issue_compensation("user-2", "APL-1", "Sorry")
        logs = enforcement.get_audit_logs(target_id="user-1")
        assert [log.action for log in logs] == ["ISSUE_PUNISHMENT"]
        assert logs[0].actor_id == "mod-1"
        assert [c.source_id for c in enforcement.get_compensations("user-2")] == ["APL-1"]

    def test_statistics(self, enforcement):
        enforcement.ban_user("user-1", "30d", "Cheating")
        enforcement.warn_user("user-2", "Warning")
        enforcement.add_to_watch_list("user-3", 30, "Watch")
        stats = enforcement.get_statistics()
        assert stats["total_punishments"] == 2
        assert stats["active_by_type"] == {"temporary_ban": 1, "warning": 1}
        assert stats["watch_list_size"] == 1

    def test_audit_log_newest_first_within_same_instant(self, enforcement):
        enforcement.warn_user("user-1", "First")
        enforcement.add_to_watch_list("user-1", 7, "Second")
        enforcement.increase_monitoring("user-1", 7, "Third")
        actions = [log.action for log in enforcement.get_audit_logs(target_id="user-1")]
        assert actions == ["INCREASE_MONITORING", "WATCH_LIST", "ISSUE_PUNISHMENT"]


class TestStoredState:
    def test_second_instance_sees_the_same_state(self, store, clock):
        first = EnforcementService(store=store, clock=clock)
        first.ban_user("user-1", "7d", "Cheating", source_id="CASE-1")
        first.add_to_watch_list("user-2", 30, "Watch")
        first.invalidate_results("user-1", "session", source_id="CASE-1")
        first.issue_compensation("user-3", "APL-1", "Sorry")

        second = EnforcementService(store=store, clock=clock)
        assert second.is_banned("user-1")
        assert second.is_watched("user-2")
        assert second.get_invalidation("CASE-1").scope == "session"
        assert [c.source_id for c in second.get_compensations("user-3")] == ["APL-1"]

        second.revoke_punishments("user-1", "admin", "Appeal approved", source_id="CASE-1")
        assert not first.is_banned("user-1")

    def test_repeat_watch_refreshes_expiry(self, enforcement, clock):
        enforcement.add_to_watch_list("user-1", 1, "Short")
        enforcement.add_to_watch_list("user-1", 30, "Longer")
        clock.advance(days=2)
        assert enforcement.is_watched("user-1")
        assert enforcement.get_statistics()["watch_list_size"] == 1
