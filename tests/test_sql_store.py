"""
Tests for the SQLAlchemy record store.
"""
import pytest

from conftest import make_detection
from detection.src.detection_engine import DetectionResult
from kernel.src.db_session import DatabaseManager
from kernel.src.models import RecordModel
from kernel.src.ports import MetricEvent
from kernel.src.repository import CASES, DETECTIONS, PUNISHMENTS
from kernel.src.repository_db import SqlStore
from review.src.case_manager import CaseManager, CaseStatus, ReviewDecision, Verdict
from review.src.reviewer_pool import ReviewerPool, Tier
from safety.src.enforcement_service import EnforcementService
from safety.src.trust_safety_service import TrustSafetyService


@pytest.fixture
def db_manager():
    manager = DatabaseManager("sqlite://")
    yield manager
    manager.close()


@pytest.fixture
def sql_store(db_manager):
    return SqlStore(db_manager)


class TestSqlStore:
    def test_put_and_get(self, sql_store):
        sql_store.register(DETECTIONS, DetectionResult)
        detection = make_detection()
        sql_store.put(DETECTIONS, detection.detection_id, detection)

        loaded = sql_store.get(DETECTIONS, detection.detection_id)
        assert loaded.flags == detection.flags
        assert loaded.detected_at == detection.detected_at
        assert sql_store.get(DETECTIONS, "missing") is None

    def test_put_overwrites(self, sql_store, db_manager):
        sql_store.register(DETECTIONS, DetectionResult)
        detection = make_detection()
        sql_store.put(DETECTIONS, detection.detection_id, detection)
        detection.confidence = 0.9
        sql_store.put(DETECTIONS, detection.detection_id, detection)

        assert sql_store.get(DETECTIONS, detection.detection_id).confidence == 0.9
        with db_manager.session_scope() as session:
            assert session.query(RecordModel).count() == 1

    def test_user_id_column_is_indexed_value(self, sql_store, db_manager):
        sql_store.register(DETECTIONS, DetectionResult)
        detection = make_detection(user_id="user-7")
        sql_store.put(DETECTIONS, detection.detection_id, detection)
        with db_manager.session_scope() as session:
            row = session.get(RecordModel, (DETECTIONS, detection.detection_id))
            assert row.user_id == "user-7"

    def test_find_filters(self, sql_store):
        sql_store.register(DETECTIONS, DetectionResult)
        for user, session in (("user-1", "s1"), ("user-1", "s2"), ("user-2", "s3")):
            detection = make_detection(user_id=user, session_id=session)
            sql_store.put(DETECTIONS, detection.detection_id, detection)

        assert len(sql_store.find(DETECTIONS, user_id="user-1")) == 2
        assert sql_store.count(DETECTIONS, session_id=["s1", "s3"]) == 2
        assert sql_store.count(DETECTIONS, lambda d: d.user_id == "user-2") == 1

    def test_index_columns_follow_collection(self, sql_store, db_manager, clock):
        enforcement = EnforcementService(store=sql_store, clock=clock)
        ban = enforcement.ban_user("user-3", "7d", "Cheating", source_id="CASE-9")
        with db_manager.session_scope() as session:
            row = session.get(RecordModel, (PUNISHMENTS, ban.punishment_id))
            assert (row.user_id, row.status, row.related_id) == ("user-3", "temporary_ban", "CASE-9")

    def test_find_narrows_on_indexed_columns(self, sql_store, db_manager, clock):
        enforcement = EnforcementService(store=sql_store, clock=clock)
        enforcement.ban_user("user-1", "permanent", "Botting")
        enforcement.warn_user("user-1", "Warning")
        enforcement.warn_user("user-2", "Warning")
        assert len(sql_store.find(PUNISHMENTS, user_id="user-1")) == 2
        assert sql_store.count(PUNISHMENTS, punishment_type=["warning", "restriction"]) == 2
        assert sql_store.count(PUNISHMENTS, user_id="user-1", punishment_type=["permanent_ban"]) == 1

        # 索引列与负载不一致的行只能被 SQL 条件排除
        stray = enforcement.warn_user("user-3", "Warning")
        with db_manager.session_scope() as session:
            row = session.get(RecordModel, (PUNISHMENTS, stray.punishment_id))
            row.user_id = "someone-else"
        assert sql_store.count(PUNISHMENTS, user_id="user-3") == 0
        assert sql_store.count(PUNISHMENTS, lambda p: p.user_id == "user-3") == 1


class TestCaseManagerOnSql:
    def test_case_lifecycle_persists(self, sql_store, clock):
        reviewers = ReviewerPool(default_max_load=20)
        reviewers.register("rev-1", Tier.REVIEWER)
        manager = CaseManager(sql_store, reviewers, clock=clock)

        case = manager.create_case(make_detection())
        assert case.status == CaseStatus.ASSIGNED
        # 状态列表过滤下推为 IN 查询
        assert manager.reviewer_load("rev-1") == 1

        clock.advance(minutes=10)
        manager.start_review(case.case_id, "rev-1")
        done = manager.submit_review(case.case_id, "rev-1", ReviewDecision(
            Verdict.LEGITIMATE, 0.9, "Pauses and undo moves look human"
        ))
        assert done.status == CaseStatus.COMPLETED
        assert manager.reviewer_load("rev-1") == 0
        assert sql_store.count(CASES, status=CaseStatus.COMPLETED) == 1

    def test_facade_validates_on_sql(self, sql_store, clock, bot_telemetry):
        service = TrustSafetyService(store=sql_store, clock=clock)
        result = service.validate_solution("user-1", "sess-1", bot_telemetry)
        assert not result["valid"]
        case = service.cases.get_case(result["case_id"])
        assert case.detection.detection_id == result["detection"]["detection_id"]


class TestServiceStateOnSql:
    def test_state_survives_new_service_instance(self, db_manager, clock, human_telemetry):
        first = TrustSafetyService(store=SqlStore(db_manager), clock=clock)
        first.reviewers.register("rev-1", Tier.REVIEWER)
        first.moderators.register("mod-1", Tier.SENIOR)
        first.enforcement.ban_user("user-9", "permanent", "Botting")
        first.enforcement.add_to_watch_list("user-9", 30, "Inconclusive review")
        first.feedback.record_feedback("user-9", "CASE-1", "false_positive", ["timing_anomaly"])
        first.validate_solution("user-1", "sess-1", human_telemetry)

        second = TrustSafetyService(store=SqlStore(db_manager), clock=clock)
        assert second.reviewers.get("rev-1").tier == Tier.REVIEWER
        assert second.moderators.get("mod-1").tier == Tier.SENIOR
        assert second.reviewers.get("mod-1") is None
        assert second.enforcement.is_banned("user-9")
        assert second.enforcement.is_watched("user-9")
        assert second.feedback.false_positive_counts() == {"timing_anomaly": 1}
        assert second.baselines.get_baseline("user-1").sample_count == 1
        assert [e.kind for e in second.analytics.events] == ["submission"]

    def test_metric_events_round_trip(self, sql_store, clock):
        service = TrustSafetyService(store=sql_store, clock=clock)
        service.analytics.emit(MetricEvent(kind="false_positive", occurred_at=clock(),
                                           user_id="user-1", attributes={"flags": ["timing_anomaly"]}))
        assert service.analytics.get_false_positive_flags() == {"timing_anomaly": 1}
        assert service.analytics.events[0].occurred_at == clock()
