"""
Tests for community reports, voting consensus, auto moderation and moderator actions.
"""
import pytest

from community.src.community_moderation import (
    Consensus, ModerationAction, ModerationActionType, ReportEscalationLevel, ReportEvidence,
    ReportStatus, ReportSubmission, ReportType, VoteOption
)
from detection.src.detection_engine import Severity
from kernel.src.errors import (
    EligibilityDenied, InvalidStateError, NotFoundError, ValidationFailure
)
from review.src.case_manager import CaseSource
from review.src.reviewer_pool import Tier

DESCRIPTION = "Solved the expert board in four seconds without a single pause."


def submission(report_type=ReportType.CHEATING, session_id="sess-1", **evidence):
    return ReportSubmission(
        report_type=report_type,
        reason="Impossible solve time",
        description=DESCRIPTION,
        evidence=ReportEvidence(**evidence),
        session_id=session_id,
        puzzle_id="puzzle-42",
    )


@pytest.fixture
def community(staffed_service):
    return staffed_service.community


class TestSubmission:
    def test_cheating_report_opens_voting(self, community, service):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        assert report.status == ReportStatus.PENDING
        assert report.voting_open
        assert report.severity == Severity.MEDIUM
        assert report.report_id.startswith("REP-")
        assert [e.kind for e in service.analytics.events] == ["report_submitted"]

    def test_strong_evidence_is_critical_and_assigned(self, community):
        report = community.submit_report(
            "reporter-1", "suspect-1",
            submission(screenshots=["a.png"], video_url="https://www.youtube.com/watch?v=x")
        )
        assert report.severity == Severity.CRITICAL
        assert report.priority == 10
        assert report.manual_review_required
        assert report.status == ReportStatus.INVESTIGATING
        assert report.assigned_moderator == "mod-senior"

    def test_harassment_goes_to_manual_review(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission(ReportType.HARASSMENT))
        assert not report.voting_open
        assert report.assigned_moderator == "mod-junior"

    def test_self_report(self, community):
        with pytest.raises(ValidationFailure) as exc:
            community.submit_report("user-1", "user-1", submission())
        assert exc.value.reason == "self_report"

    def test_description_too_short(self, community):
        short = ReportSubmission(ReportType.CHEATING, "Fast", "Too fast")
        with pytest.raises(ValidationFailure) as exc:
            community.submit_report("reporter-1", "suspect-1", short)
        assert exc.value.reason == "description_too_short"

    def test_video_host_must_be_known(self, community):
        with pytest.raises(ValidationFailure) as exc:
            community.submit_report("reporter-1", "suspect-1",
                                    submission(video_url="https://example.com/clip.mp4"))
        assert exc.value.reason == "invalid_video_url"

    def test_reporter_needs_reputation(self, community, reputation):
        reputation.reputations["newbie"] = 5
        with pytest.raises(EligibilityDenied) as exc:
            community.submit_report("newbie", "suspect-1", submission())
        assert exc.value.reason == "insufficient_reputation"

    def test_abusive_reporter(self, community, reputation):
        reputation.abuse_scores["troll"] = 0.9
        with pytest.raises(EligibilityDenied) as exc:
            community.submit_report("troll", "suspect-1", submission())
        assert exc.value.reason == "reporter_abuse"

    def test_duplicate_report(self, community):
        community.submit_report("reporter-1", "suspect-1", submission())
        with pytest.raises(EligibilityDenied) as exc:
            community.submit_report("reporter-1", "suspect-1", submission())
        assert exc.value.reason == "duplicate_report"

    def test_daily_limit(self, community):
        for i in range(5):
            community.submit_report("reporter-1", f"suspect-{i}", submission(ReportType.GRIEFING))
        with pytest.raises(EligibilityDenied) as exc:
            community.submit_report("reporter-1", "suspect-9", submission(ReportType.GRIEFING))
        assert exc.value.reason == "daily_report_limit"


class TestAutoModeration:
    def test_fifth_report_restricts(self, community, service):
        """24小时内第5次被举报触发临时限制"""
        for i in range(4):
            report = community.submit_report(f"reporter-{i}", "suspect-1", submission(ReportType.GRIEFING))
            assert report.auto_mod_action is None
        assert not service.enforcement.is_restricted("suspect-1")

        fifth = community.submit_report("reporter-4", "suspect-1", submission(ReportType.GRIEFING))
        assert fifth.auto_mod_action == "temporary_restriction"
        assert service.enforcement.is_restricted("suspect-1")

    def test_old_reports_fall_out_of_window(self, community, service, clock):
        for i in range(4):
            community.submit_report(f"reporter-{i}", "suspect-1", submission(ReportType.GRIEFING))
        clock.advance(hours=25)
        fifth = community.submit_report("reporter-4", "suspect-1", submission(ReportType.GRIEFING))
        assert fifth.auto_mod_action is None
        assert not service.enforcement.is_restricted("suspect-1")


class TestVoting:
    def test_cheat_consensus_forwards_to_review(self, community, service, reputation):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        community.vote_on_report(report.report_id, "voter-1", VoteOption.CHEAT)
        community.vote_on_report(report.report_id, "voter-2", VoteOption.CHEAT)
        result = community.vote_on_report(report.report_id, "voter-3", VoteOption.SUSPICIOUS)

        assert result.community_consensus == Consensus.CHEAT
        assert result.status == ReportStatus.ESCALATED
        assert not result.voting_open
        case = service.cases.get_case(result.linked_case_id)
        assert case.source == CaseSource.COMMUNITY_REPORT
        assert case.user_id == "suspect-1"
        assert case.linked_reports == [report.report_id]
        assert reputation.adjustments[-1] == {
            "user_id": "reporter-1", "delta": 5,
            "reason": f"Community confirmed report {report.report_id}",
        }

    def test_legitimate_consensus_dismisses(self, community, reputation):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        for voter in ("voter-1", "voter-2", "voter-3"):
            result = community.vote_on_report(report.report_id, voter, VoteOption.LEGITIMATE)
        assert result.status == ReportStatus.DISMISSED
        assert reputation.get_reputation("reporter-1") == 40

    def test_suspicious_consensus_monitors(self, community, service):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        for voter in ("voter-1", "voter-2", "voter-3"):
            result = community.vote_on_report(report.report_id, voter, VoteOption.SUSPICIOUS)
        assert result.status == ReportStatus.RESOLVED
        assert service.enforcement.is_monitored("suspect-1")

    def test_split_vote_stays_pending(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        community.vote_on_report(report.report_id, "voter-1", VoteOption.CHEAT)
        community.vote_on_report(report.report_id, "voter-2", VoteOption.SUSPICIOUS)
        result = community.vote_on_report(report.report_id, "voter-3", VoteOption.LEGITIMATE)
        assert result.community_consensus == Consensus.INCONCLUSIVE
        assert result.status == ReportStatus.PENDING
        assert result.voting_open

    def test_vote_rules(self, community, reputation):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        community.vote_on_report(report.report_id, "voter-1", VoteOption.CHEAT, "Watched the replay")

        with pytest.raises(EligibilityDenied) as exc:
            community.vote_on_report(report.report_id, "voter-1", VoteOption.CHEAT)
        assert exc.value.reason == "already_voted"

        with pytest.raises(EligibilityDenied) as exc:
            community.vote_on_report(report.report_id, "suspect-1", VoteOption.LEGITIMATE)
        assert exc.value.reason == "conflict_of_interest"

        reputation.reputations["lurker"] = 20
        with pytest.raises(EligibilityDenied) as exc:
            community.vote_on_report(report.report_id, "lurker", VoteOption.CHEAT)
        assert exc.value.reason == "insufficient_reputation"

        votes = community.get_votes(report.report_id)
        assert [v.reasoning for v in votes] == ["Watched the replay"]

    def test_non_voting_report(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission(ReportType.GRIEFING))
        with pytest.raises(InvalidStateError) as exc:
            community.vote_on_report(report.report_id, "voter-1", VoteOption.CHEAT)
        assert exc.value.reason == "voting_closed"


class TestModeration:
    def test_junior_cannot_ban(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission(ReportType.GRIEFING))
        with pytest.raises(EligibilityDenied) as exc:
            community.moderate_report(report.report_id, "mod-junior",
                                      ModerationAction(ModerationActionType.BAN, "Griefing"))
        assert exc.value.reason == "action_not_permitted"

    def test_restrict_resolves_and_rewards(self, community, service, reputation, notifications):
        report = community.submit_report("reporter-1", "suspect-1", submission(ReportType.GRIEFING))
        resolved = community.moderate_report(
            report.report_id, "mod-senior",
            ModerationAction(ModerationActionType.RESTRICT, "Repeated griefing", duration="2d")
        )
        assert resolved.status == ReportStatus.RESOLVED
        assert resolved.resolution["moderator_id"] == "mod-senior"
        assert service.enforcement.is_restricted("suspect-1")
        assert reputation.get_reputation("reporter-1") == 55
        assert "report_moderated" in notifications.topics_for("suspect-1")

        with pytest.raises(InvalidStateError):
            community.moderate_report(report.report_id, "mod-senior",
                                      ModerationAction(ModerationActionType.WARN, "Again"))

    def test_dismiss_penalizes_reporter(self, community, reputation):
        report = community.submit_report("reporter-1", "suspect-1", submission(ReportType.GRIEFING))
        dismissed = community.moderate_report(report.report_id, "mod-junior",
                                              ModerationAction(ModerationActionType.DISMISS, "No evidence"))
        assert dismissed.status == ReportStatus.RESOLVED
        assert reputation.get_reputation("reporter-1") == 40

    def test_escalate_action_opens_case(self, community, service):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        resolved = community.moderate_report(report.report_id, "mod-expert",
                                             ModerationAction(ModerationActionType.ESCALATE, "Needs review"))
        assert resolved.linked_case_id is not None
        assert service.cases.get_case(resolved.linked_case_id).linked_reports == [report.report_id]

    def test_unknown_moderator(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        with pytest.raises(NotFoundError):
            community.moderate_report(report.report_id, "nobody",
                                      ModerationAction(ModerationActionType.WARN, "Warn"))

    def test_moderator_needs_reputation(self, community):
        community.register_moderator("mod-new", Tier.SENIOR)
        report = community.submit_report("reporter-1", "suspect-1", submission())
        with pytest.raises(EligibilityDenied) as exc:
            community.moderate_report(report.report_id, "mod-new",
                                      ModerationAction(ModerationActionType.WARN, "Warn"))
        assert exc.value.reason == "insufficient_reputation"

    def test_escalate_report_reassigns(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission(ReportType.HARASSMENT))
        escalated = community.escalate_report(report.report_id, "mod-junior", "Threats in chat",
                                              ReportEscalationLevel.EXPERT)
        assert escalated.status == ReportStatus.ESCALATED
        assert escalated.escalation["previous_moderator"] == "mod-junior"
        assert escalated.assigned_moderator == "mod-expert"

    def test_player_escalation_needs_reputation(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        with pytest.raises(EligibilityDenied):
            community.escalate_report(report.report_id, "voter-1", "Please look",
                                      ReportEscalationLevel.SENIOR)


class TestAnalysis:
    def test_report_analysis_recommends_escalation(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        for voter in ("voter-1", "voter-2", "voter-3"):
            community.vote_on_report(report.report_id, voter, VoteOption.CHEAT)
        analysis = community.get_report_analysis(report.report_id)
        assert analysis["recommended_action"] == "escalate"
        assert analysis["community_feedback"]["agreement"] == 1.0

    def test_fresh_report_awaits_votes(self, community):
        report = community.submit_report("reporter-1", "suspect-1", submission())
        assert community.get_report_analysis(report.report_id)["recommended_action"] == "await_votes"

    def test_community_metrics(self, community, clock):
        report = community.submit_report("reporter-1", "suspect-1", submission(ReportType.GRIEFING))
        community.submit_report("reporter-2", "suspect-1", submission(ReportType.GRIEFING))
        clock.advance(hours=2)
        community.moderate_report(report.report_id, "mod-junior",
                                  ModerationAction(ModerationActionType.WARN, "Be nice"))

        metrics = community.get_community_metrics("week")
        assert metrics["total_reports"] == 2
        assert metrics["resolved_reports"] == 1
        assert metrics["resolution_rate"] == 0.5
        assert metrics["average_resolution_hours"] == 2.0
        assert metrics["reports_by_type"] == {"griefing": 2}

    def test_unknown_period(self, community):
        with pytest.raises(ValidationFailure):
            community.get_community_metrics("decade")
