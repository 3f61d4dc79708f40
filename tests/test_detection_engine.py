"""
Tests for the detection engine scoring and severity policy.
"""
import pytest

from detection.src.detection_engine import (
    BaselineTracker, CheatFlag, DetectionEngine, DetectionFeedbackRecorder, DetectionResult,
    Severity, UserBaseline, WeightedFlagScorer, clamp_confidence
)
from evidence.src.evidence_collector import EvidenceCollector


@pytest.fixture
def engine():
    return DetectionEngine(known_bot_signatures=[])


@pytest.fixture
def collect():
    collector = EvidenceCollector()

    def _collect(telemetry, user_id="user-1", session_id="sess-1"):
        return collector.collect(user_id, session_id, telemetry)
    return _collect


class TestEvaluate:
    def test_human_session_is_clean(self, engine, collect, human_telemetry):
        result = engine.evaluate(collect(human_telemetry))
        assert result.flags == frozenset()
        assert result.confidence == 0.0
        assert result.severity == Severity.LOW
        assert not result.is_flagged
        assert "User behavior appears normal" in result.recommendations

    def test_bot_session_is_critical(self, engine, collect, bot_telemetry):
        result = engine.evaluate(collect(bot_telemetry))
        assert {
            CheatFlag.SUPERHUMAN_TIMING,
            CheatFlag.INHUMAN_CONSISTENCY,
            CheatFlag.IMPOSSIBLE_REACTION_TIME,
            CheatFlag.AUTOMATED_TIMING,
            CheatFlag.AUTOMATION_DETECTED,
        } <= result.flags
        assert result.confidence == 1.0
        assert result.severity == Severity.CRITICAL
        assert result.is_flagged
        assert "Review user for possible automation tools" in result.recommendations

    def test_missing_data_is_technical_only(self, engine, collect):
        """没有走法和计时数据：只产生技术性标记，不视为作弊"""
        result = engine.evaluate(collect({"puzzleId": "p-1"}))
        assert result.flags == {CheatFlag.MISSING_TIMING_DATA, CheatFlag.EMPTY_MOVE_SEQUENCE}
        assert not result.is_flagged
        assert "Request complete telemetry for this session" in result.recommendations

    def test_known_bot_signature(self, collect, bot_telemetry):
        evidence = collect(bot_telemetry)
        engine = DetectionEngine(known_bot_signatures=[evidence.move_signature])
        result = engine.evaluate(evidence)
        assert CheatFlag.BOT_SIGNATURE in result.flags

    def test_perfect_solution(self, engine, collect, human_telemetry):
        telemetry = dict(human_telemetry, optimalMoveCount=10, optimalMoves=10)
        result = engine.evaluate(collect(telemetry))
        assert CheatFlag.PERFECT_SOLUTION in result.flags
        assert CheatFlag.TOO_OPTIMAL in result.flags

    def test_result_dict_round_trip(self, engine, collect, bot_telemetry):
        result = engine.evaluate(collect(bot_telemetry))
        restored = DetectionResult.from_dict(result.to_dict())
        assert restored.flags == result.flags
        assert restored.severity == result.severity
        assert restored.evidence == result.evidence


class TestTiming:
    def test_baseline_anomaly(self, engine, collect, human_telemetry):
        baseline = UserBaseline(user_id="user-1", sample_count=20,
                                mean_move_time_ms=400.0, std_move_time_ms=100.0)
        timing = engine.analyze_timing(collect(human_telemetry), baseline)
        assert timing.z_score > 3
        assert CheatFlag.TIMING_ANOMALY in timing.flags

    def test_small_baseline_ignored(self, engine, collect, human_telemetry):
        baseline = UserBaseline(user_id="user-1", sample_count=3,
                                mean_move_time_ms=400.0, std_move_time_ms=100.0)
        timing = engine.analyze_timing(collect(human_telemetry), baseline)
        assert timing.z_score is None


class TestMovement:
    def test_pattern_repetition(self):
        assert DetectionEngine.pattern_repetition(["a", "b"] * 5) == 5
        assert DetectionEngine.pattern_repetition(["a"]) == 0

    def test_repetitive_patterns_flagged(self, engine, collect, human_telemetry):
        telemetry = dict(human_telemetry)
        telemetry["moves"] = [dict(m, type="ab"[i % 2]) for i, m in enumerate(human_telemetry["moves"])]
        movement = engine.analyze_movement(collect(telemetry))
        assert CheatFlag.REPETITIVE_PATTERNS in movement.flags


class TestSeverityPolicy:
    def test_critical_requires_automation_flag(self, engine):
        flags = frozenset({CheatFlag.SUPERHUMAN_TIMING})
        assert engine.classify_severity(0.95, flags) == Severity.HIGH
        assert engine.classify_severity(0.95, flags | {CheatFlag.AUTOMATED_TIMING}) == Severity.CRITICAL

    def test_flag_count_raises_to_high(self, engine):
        flags = frozenset({CheatFlag.TOO_OPTIMAL, CheatFlag.ATYPICAL_BEHAVIOR,
                           CheatFlag.REPETITIVE_PATTERNS})
        assert engine.classify_severity(0.2, flags) == Severity.HIGH

    def test_critical_flag_raises_to_high(self, engine):
        assert engine.classify_severity(0.1, frozenset({CheatFlag.BOT_SIGNATURE})) == Severity.HIGH

    def test_medium_and_low(self, engine):
        flags = frozenset({CheatFlag.TOO_OPTIMAL})
        assert engine.classify_severity(0.5, flags) == Severity.MEDIUM
        assert engine.classify_severity(0.4, flags) == Severity.LOW


class TestScoring:
    def test_confidence_is_clamped(self):
        scorer = WeightedFlagScorer()
        assert scorer([CheatFlag.MEMORY_MANIPULATION, CheatFlag.SCRIPT_INJECTION]) == 1.0
        assert scorer([]) == 0.0

    def test_clamp_handles_nan(self):
        assert clamp_confidence(float("nan")) == 0.0
        assert clamp_confidence(-2) == 0.0

    def test_pluggable_scorer_is_clamped(self, collect, bot_telemetry):
        engine = DetectionEngine(scorer=lambda flags: 7.5, known_bot_signatures=[])
        assert engine.evaluate(collect(bot_telemetry)).confidence == 1.0


class TestBaselinesAndFeedback:
    def test_baseline_running_mean(self, collect, human_telemetry):
        tracker = BaselineTracker()
        evidence = collect(human_telemetry)
        tracker.update(evidence)
        baseline = tracker.update(evidence)
        assert baseline.sample_count == 2
        assert baseline.mean_move_time_ms == pytest.approx(2370.0)
        assert baseline.std_move_time_ms == pytest.approx(0.0)

    def test_false_positive_counts(self):
        recorder = DetectionFeedbackRecorder()
        recorder.record_feedback("u1", "case-1", "false_positive", ["superhuman_timing"])
        recorder.record_feedback("u2", "case-2", "confirmed_cheat", ["superhuman_timing"])
        assert recorder.false_positive_counts() == {"superhuman_timing": 1}

    def test_baseline_state_lives_in_the_store(self, collect, human_telemetry, store):
        evidence = collect(human_telemetry)
        BaselineTracker(store=store).update(evidence)
        baseline = BaselineTracker(store=store).update(evidence)
        assert baseline.sample_count == 2
        assert baseline.m2_move_time == pytest.approx(0.0)
        assert BaselineTracker(store=store).get_baseline(evidence.user_id).sample_count == 2

    def test_feedback_signals_keep_recording_order(self, store, clock):
        recorder = DetectionFeedbackRecorder(store=store, clock=clock)
        recorder.record_feedback("u1", "case-1", "false_positive", ["timing_anomaly"])
        recorder.record_feedback("u1", "case-2", "confirmed_cheat", ["timing_anomaly"])
        reloaded = DetectionFeedbackRecorder(store=store, clock=clock)
        assert [s["signal"] for s in reloaded.signals] == ["false_positive", "confirmed_cheat"]
        assert reloaded.signals[0]["recorded_at"] == clock().isoformat()
