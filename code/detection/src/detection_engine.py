"""
PuzzleGuard Detection Engine
作弊检测引擎 - 将证据包评分为标记、严重度与置信度

核心功能:
1. 计时分析 (Timing Analysis)
2. 走法模式分析 (Movement Patterns)
3. 行为一致性分析 (Behavior Profiling, 对比用户基线)
4. 置信度评分 (可插拔 scorer)
5. 严重度分级 (Severity Policy)

DetectionEngine is a pure scoring function. Baselines and feedback signals
persist through the record store.
"""
import logging
import math
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from config.settings import DETECTION_CONFIG, KNOWN_BOT_SIGNATURES, RECORD_SCHEMA_VERSION
from evidence.src.evidence_collector import EvidenceBundle
from kernel.src.ports import Clock, utc_now
from kernel.src.repository import (
    BASELINES, DETECTION_FEEDBACK, InMemoryStore, RecordStore, dump_time, load_time
)

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================
class CheatFlag(str, Enum):
    """作弊标记"""
    # 状态校验
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    IMPOSSIBLE_MOVE = "impossible_move"
    STATE_MANIPULATION = "state_manipulation"
    # 计时
    SUPERHUMAN_TIMING = "superhuman_timing"
    INHUMAN_CONSISTENCY = "inhuman_consistency"
    TIMING_ANOMALY = "timing_anomaly"
    IMPOSSIBLE_REACTION_TIME = "impossible_reaction_time"
    AUTOMATED_TIMING = "automated_timing"
    # 走法
    PERFECT_SOLUTION = "perfect_solution"
    TOO_OPTIMAL = "too_optimal"
    REPETITIVE_PATTERNS = "repetitive_patterns"
    MECHANICAL_MOVEMENT = "mechanical_movement"
    SOLVER_SIGNATURE = "solver_signature"
    # 行为
    IMPOSSIBLE_IMPROVEMENT = "impossible_improvement"
    SKILL_INCONSISTENCY = "skill_inconsistency"
    ATYPICAL_BEHAVIOR = "atypical_behavior"
    SUDDEN_EXPERTISE = "sudden_expertise"
    # 技术性证据
    MISSING_TIMING_DATA = "missing_timing_data"
    EMPTY_MOVE_SEQUENCE = "empty_move_sequence"
    VALIDATION_ERROR = "validation_error"
    CLIENT_MANIPULATION = "client_manipulation"
    # 统计
    OUTLIER_PERFORMANCE = "outlier_performance"
    IMPOSSIBLE_STATISTICS = "impossible_statistics"
    INCONSISTENT_METRICS = "inconsistent_metrics"
    # 自动化
    AUTOMATION_DETECTED = "automation_detected"
    BOT_SIGNATURE = "bot_signature"
    MEMORY_MANIPULATION = "memory_manipulation"
    SCRIPT_INJECTION = "script_injection"


class Severity(str, Enum):
    """严重度（LOW < MEDIUM < HIGH < CRITICAL）"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

CRITICAL_FLAGS: FrozenSet[CheatFlag] = frozenset({
    CheatFlag.AUTOMATION_DETECTED,
    CheatFlag.MEMORY_MANIPULATION,
    CheatFlag.BOT_SIGNATURE,
    CheatFlag.SCRIPT_INJECTION,
})

AUTOMATION_FLAGS: FrozenSet[CheatFlag] = CRITICAL_FLAGS | {CheatFlag.AUTOMATED_TIMING}

# 数据缺失类标记：只说明证据不完整
TECHNICAL_FLAGS: FrozenSet[CheatFlag] = frozenset({
    CheatFlag.MISSING_TIMING_DATA,
    CheatFlag.EMPTY_MOVE_SEQUENCE,
})


# =============================================================================
# Confidence Scoring
# =============================================================================
FLAG_WEIGHTS: Dict[CheatFlag, float] = {
    CheatFlag.INVALID_STATE_TRANSITION: 0.9,
    CheatFlag.IMPOSSIBLE_MOVE: 0.8,
    CheatFlag.STATE_MANIPULATION: 0.9,
    CheatFlag.SUPERHUMAN_TIMING: 0.7,
    CheatFlag.INHUMAN_CONSISTENCY: 0.6,
    CheatFlag.TIMING_ANOMALY: 0.4,
    CheatFlag.IMPOSSIBLE_REACTION_TIME: 0.5,
    CheatFlag.AUTOMATED_TIMING: 0.7,
    CheatFlag.PERFECT_SOLUTION: 0.5,
    CheatFlag.TOO_OPTIMAL: 0.4,
    CheatFlag.REPETITIVE_PATTERNS: 0.3,
    CheatFlag.MECHANICAL_MOVEMENT: 0.4,
    CheatFlag.SOLVER_SIGNATURE: 0.8,
    CheatFlag.IMPOSSIBLE_IMPROVEMENT: 0.8,
    CheatFlag.SKILL_INCONSISTENCY: 0.3,
    CheatFlag.ATYPICAL_BEHAVIOR: 0.3,
    CheatFlag.SUDDEN_EXPERTISE: 0.5,
    CheatFlag.MISSING_TIMING_DATA: 0.2,
    CheatFlag.EMPTY_MOVE_SEQUENCE: 0.2,
    CheatFlag.VALIDATION_ERROR: 0.5,
    CheatFlag.CLIENT_MANIPULATION: 0.9,
    CheatFlag.OUTLIER_PERFORMANCE: 0.4,
    CheatFlag.IMPOSSIBLE_STATISTICS: 0.7,
    CheatFlag.INCONSISTENT_METRICS: 0.3,
    CheatFlag.AUTOMATION_DETECTED: 0.9,
    CheatFlag.BOT_SIGNATURE: 0.9,
    CheatFlag.MEMORY_MANIPULATION: 1.0,
    CheatFlag.SCRIPT_INJECTION: 1.0,
}


class WeightedFlagScorer:
    """默认评分：按标记权重累加，截断到 [0, 1]"""

    def __init__(self, weights: Optional[Dict[CheatFlag, float]] = None,
                 default_weight: float = 0.1):
        self.weights = dict(FLAG_WEIGHTS)
        if weights:
            self.weights.update(weights)
        self.default_weight = default_weight

    def __call__(self, flags: Iterable[CheatFlag]) -> float:
        total = sum(self.weights.get(f, self.default_weight) for f in flags)
        return clamp_confidence(total)


def clamp_confidence(value: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


# =============================================================================
# Data Classes
# =============================================================================
@dataclass
class UserBaseline:
    """用户历史基线"""
    user_id: str
    sample_count: int = 0
    mean_move_time_ms: float = 0.0
    std_move_time_ms: float = 0.0
    mean_solution_time_ms: float = 0.0
    # Welford 累积量
    m2_move_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "user_id": self.user_id,
            "sample_count": self.sample_count,
            "mean_move_time_ms": self.mean_move_time_ms,
            "std_move_time_ms": self.std_move_time_ms,
            "mean_solution_time_ms": self.mean_solution_time_ms,
            "m2_move_time": self.m2_move_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserBaseline":
        return cls(
            user_id=data["user_id"],
            sample_count=int(data.get("sample_count", 0)),
            mean_move_time_ms=float(data.get("mean_move_time_ms", 0.0)),
            std_move_time_ms=float(data.get("std_move_time_ms", 0.0)),
            mean_solution_time_ms=float(data.get("mean_solution_time_ms", 0.0)),
            m2_move_time=float(data.get("m2_move_time", 0.0)),
        )


@dataclass
class TimingAnalysis:
    average_ms: float = 0.0
    std_dev_ms: float = 0.0
    coefficient_of_variation: float = 0.0
    superhuman_ratio: float = 0.0
    suspicious_intervals: List[int] = field(default_factory=list)
    human_likelihood: float = 0.0
    z_score: Optional[float] = None
    flags: List[CheatFlag] = field(default_factory=list)


@dataclass
class MovementAnalysis:
    efficiency: Optional[float] = None
    optimality: Optional[float] = None
    repetitiveness: int = 0
    pattern_signature: str = ""
    flags: List[CheatFlag] = field(default_factory=list)


@dataclass
class BehaviorAnalysis:
    typical_behavior: bool = True
    automation_score: float = 0.0
    skill_improvement: Optional[float] = None
    consistency_deviation: Optional[float] = None
    missing_human_traits: List[str] = field(default_factory=list)
    flags: List[CheatFlag] = field(default_factory=list)


@dataclass
class DetectionResult:
    """检测结果（每次评估产生一次，只读）"""
    detection_id: str
    user_id: str
    puzzle_id: str
    session_id: str
    flags: FrozenSet[CheatFlag]
    severity: Severity
    confidence: float
    evidence: EvidenceBundle
    analysis: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_flagged(self) -> bool:
        """是否存在非技术性的作弊标记"""
        return bool(self.flags - TECHNICAL_FLAGS)

    @property
    def has_critical_flag(self) -> bool:
        return bool(self.flags & CRITICAL_FLAGS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "detection_id": self.detection_id,
            "user_id": self.user_id,
            "puzzle_id": self.puzzle_id,
            "session_id": self.session_id,
            "flags": sorted(f.value for f in self.flags),
            "severity": self.severity.value,
            "confidence": self.confidence,
            "evidence": self.evidence.to_dict(),
            "analysis": self.analysis,
            "recommendations": list(self.recommendations),
            "detected_at": self.detected_at.isoformat(),
            "created_at": self.detected_at.isoformat(),
            "is_flagged": self.is_flagged,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionResult":
        return cls(
            detection_id=data["detection_id"],
            user_id=data["user_id"],
            puzzle_id=data["puzzle_id"],
            session_id=data["session_id"],
            flags=frozenset(CheatFlag(f) for f in data.get("flags", [])),
            severity=Severity(data["severity"]),
            confidence=float(data["confidence"]),
            evidence=EvidenceBundle.from_dict(data["evidence"]),
            analysis=data.get("analysis") or {},
            recommendations=list(data.get("recommendations") or []),
            detected_at=datetime.fromisoformat(data["detected_at"]),
        )


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _std(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = _mean(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


# =============================================================================
# Detection Engine
# =============================================================================
class DetectionEngine:
    """作弊检测引擎"""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 scorer: Optional[Callable[[Iterable[CheatFlag]], float]] = None,
                 known_bot_signatures: Optional[Iterable[str]] = None):
        self.config = {**DETECTION_CONFIG, **(config or {})}
        self.scorer = scorer or WeightedFlagScorer()
        self.known_bot_signatures = set(known_bot_signatures or KNOWN_BOT_SIGNATURES)

    def evaluate(self, evidence: EvidenceBundle,
                 baseline: Optional[UserBaseline] = None) -> DetectionResult:
        """评估一次提交"""
        timing = self.analyze_timing(evidence, baseline)
        movement = self.analyze_movement(evidence)
        behavior = self.analyze_behavior(evidence, baseline)

        flags = frozenset(timing.flags + movement.flags + behavior.flags)
        confidence = clamp_confidence(self.scorer(flags))
        severity = self.classify_severity(confidence, flags)

        result = DetectionResult(
            detection_id=str(uuid.uuid4()),
            user_id=evidence.user_id,
            puzzle_id=evidence.puzzle_id,
            session_id=evidence.session_id,
            flags=flags,
            severity=severity,
            confidence=confidence,
            evidence=evidence,
            analysis={
                "timing": {
                    "average_ms": timing.average_ms,
                    "std_dev_ms": timing.std_dev_ms,
                    "coefficient_of_variation": timing.coefficient_of_variation,
                    "superhuman_ratio": timing.superhuman_ratio,
                    "suspicious_intervals": timing.suspicious_intervals,
                    "human_likelihood": timing.human_likelihood,
                    "z_score": timing.z_score,
                },
                "movement": {
                    "efficiency": movement.efficiency,
                    "optimality": movement.optimality,
                    "repetitiveness": movement.repetitiveness,
                    "pattern_signature": movement.pattern_signature,
                },
                "behavior": {
                    "typical_behavior": behavior.typical_behavior,
                    "automation_score": behavior.automation_score,
                    "skill_improvement": behavior.skill_improvement,
                    "consistency_deviation": behavior.consistency_deviation,
                    "missing_human_traits": behavior.missing_human_traits,
                },
            },
        )
        result.recommendations = self.generate_recommendations(result)

        logger.info(
            f"Detection for {evidence.user_id}/{evidence.puzzle_id}: "
            f"severity={severity.value}, confidence={confidence:.3f}, flags={len(flags)}"
        )
        return result

    # =========================================================================
    # Severity Policy
    # =========================================================================
    def classify_severity(self, confidence: float, flags: FrozenSet[CheatFlag]) -> Severity:
        cfg = self.config
        if confidence > cfg["critical_confidence"] and flags & AUTOMATION_FLAGS:
            return Severity.CRITICAL
        if (confidence > cfg["high_confidence"]
                or len(flags) >= cfg["high_flag_count"]
                or flags & CRITICAL_FLAGS):
            return Severity.HIGH
        if confidence > cfg["medium_confidence"]:
            return Severity.MEDIUM
        return Severity.LOW

    # =========================================================================
    # Timing Analysis
    # =========================================================================
    def analyze_timing(self, evidence: EvidenceBundle,
                       baseline: Optional[UserBaseline] = None) -> TimingAnalysis:
        cfg = self.config
        analysis = TimingAnalysis()
        deltas = list(evidence.timing_deltas)

        if not deltas:
            analysis.flags.append(CheatFlag.MISSING_TIMING_DATA)
            return analysis

        analysis.average_ms = _mean(deltas)
        analysis.std_dev_ms = _std(deltas)
        if analysis.average_ms > 0:
            analysis.coefficient_of_variation = analysis.std_dev_ms / analysis.average_ms

        superhuman = [d for d in deltas if d < cfg["superhuman_threshold_ms"]]
        analysis.superhuman_ratio = len(superhuman) / len(deltas)
        if analysis.superhuman_ratio > cfg["superhuman_ratio"]:
            analysis.flags.append(CheatFlag.SUPERHUMAN_TIMING)

        if len(deltas) >= 2 and analysis.coefficient_of_variation < cfg["consistency_cv_threshold"]:
            analysis.flags.append(CheatFlag.INHUMAN_CONSISTENCY)

        for i in range(len(deltas) - 1):
            if deltas[i] < cfg["min_move_time_ms"] and deltas[i + 1] < cfg["min_move_time_ms"]:
                analysis.suspicious_intervals.append(i)
        if analysis.suspicious_intervals:
            analysis.flags.append(CheatFlag.IMPOSSIBLE_REACTION_TIME)

        if (baseline is not None
                and baseline.sample_count >= cfg["min_baseline_samples"]
                and baseline.std_move_time_ms > 0):
            analysis.z_score = (analysis.average_ms - baseline.mean_move_time_ms) / baseline.std_move_time_ms
            if abs(analysis.z_score) > cfg["z_score_threshold"]:
                analysis.flags.append(CheatFlag.TIMING_ANOMALY)

        analysis.human_likelihood = self._human_likelihood(deltas, analysis)
        if analysis.human_likelihood < 0.5:
            analysis.flags.append(CheatFlag.AUTOMATED_TIMING)

        return analysis

    def _human_likelihood(self, deltas: List[float], analysis: TimingAnalysis) -> float:
        """人类反应时间的变异系数通常在 0.1-0.4 之间，并伴随思考停顿"""
        score = 1.0
        cv = analysis.coefficient_of_variation
        if cv < self.config["consistency_cv_threshold"] or cv > 0.6:
            score -= 0.3

        long_pauses = sum(1 for d in deltas if d > self.config["long_pause_ms"])
        if long_pauses < max(1, len(deltas) * 0.1):
            score -= 0.2

        if analysis.superhuman_ratio > self.config["superhuman_ratio"]:
            score -= 0.3

        return max(0.0, score)

    # =========================================================================
    # Movement Analysis
    # =========================================================================
    def analyze_movement(self, evidence: EvidenceBundle) -> MovementAnalysis:
        cfg = self.config
        analysis = MovementAnalysis()

        if not evidence.has_moves:
            analysis.flags.append(CheatFlag.EMPTY_MOVE_SEQUENCE)
            return analysis

        move_count = len(evidence.moves)
        if evidence.optimal_move_count:
            analysis.efficiency = evidence.optimal_move_count / move_count
            if analysis.efficiency > cfg["perfect_efficiency_threshold"]:
                analysis.flags.append(CheatFlag.PERFECT_SOLUTION)

        if evidence.optimal_moves is not None:
            analysis.optimality = evidence.optimal_moves / move_count
            if analysis.optimality > cfg["optimality_threshold"]:
                analysis.flags.append(CheatFlag.TOO_OPTIMAL)

        analysis.repetitiveness = self.pattern_repetition(evidence.move_types)
        if analysis.repetitiveness > cfg["pattern_repetition_limit"]:
            analysis.flags.append(CheatFlag.REPETITIVE_PATTERNS)

        analysis.pattern_signature = evidence.move_signature
        if analysis.pattern_signature in self.known_bot_signatures:
            analysis.flags.append(CheatFlag.BOT_SIGNATURE)

        return analysis

    @staticmethod
    def pattern_repetition(move_types: Sequence[str]) -> int:
        """长度 2..10 的走法类型片段的最大重复次数"""
        counts: Dict[tuple, int] = defaultdict(int)
        best = 0
        max_len = min(10, len(move_types) // 2)
        for length in range(2, max_len + 1):
            for i in range(len(move_types) - length + 1):
                key = tuple(move_types[i:i + length])
                counts[key] += 1
                best = max(best, counts[key])
        return best

    # =========================================================================
    # Behavior Analysis
    # =========================================================================
    def analyze_behavior(self, evidence: EvidenceBundle,
                         baseline: Optional[UserBaseline] = None) -> BehaviorAnalysis:
        cfg = self.config
        analysis = BehaviorAnalysis()
        deltas = list(evidence.timing_deltas)

        # 没有走法或计时数据时由技术性标记覆盖
        if not evidence.has_moves or not deltas:
            return analysis

        has_pause = any(d > cfg["thinking_pause_ms"] for d in deltas)
        low, high = min(deltas), max(deltas)
        varied = high > 0 and (low == 0 or high / low > 2)

        if not has_pause:
            analysis.missing_human_traits.append("natural_thinking_pauses")
        if not varied:
            analysis.missing_human_traits.append("natural_timing_variation")

        analysis.typical_behavior = has_pause and varied
        if not analysis.typical_behavior:
            analysis.flags.append(CheatFlag.ATYPICAL_BEHAVIOR)

        analysis.automation_score = self.automation_score(deltas)
        if analysis.automation_score > cfg["automation_threshold"]:
            analysis.flags.append(CheatFlag.AUTOMATION_DETECTED)

        if (baseline is not None and baseline.mean_solution_time_ms > 0
                and evidence.solution_time_ms):
            current = evidence.solution_time_ms
            expected = baseline.mean_solution_time_ms
            analysis.skill_improvement = expected / current - 1 if current > 0 else float("inf")
            analysis.consistency_deviation = abs(current - expected) / expected
            if analysis.skill_improvement > cfg["improvement_threshold"]:
                analysis.flags.append(CheatFlag.IMPOSSIBLE_IMPROVEMENT)
            if analysis.consistency_deviation > cfg["skill_deviation_threshold"]:
                analysis.flags.append(CheatFlag.SKILL_INCONSISTENCY)

        return analysis

    def automation_score(self, deltas: Sequence[float]) -> float:
        mean = _mean(deltas)
        if mean <= 0:
            return 1.0
        consistency = 1 - _std(deltas) / mean
        score = 0.0
        if consistency > self.config["automation_consistency"]:
            score += 0.3
        if mean < self.config["superhuman_threshold_ms"]:
            score += 0.4
        if not any(d > self.config["long_pause_ms"] for d in deltas):
            score += 0.3
        return min(1.0, score)

    # =========================================================================
    # Recommendations
    # =========================================================================
    @staticmethod
    def generate_recommendations(result: DetectionResult) -> List[str]:
        recommendations = []
        if CheatFlag.SUPERHUMAN_TIMING in result.flags:
            recommendations.append("Review user for possible automation tools")
        if CheatFlag.PERFECT_SOLUTION in result.flags:
            recommendations.append("Verify solution against known solver outputs")
        if CheatFlag.IMPOSSIBLE_IMPROVEMENT in result.flags:
            recommendations.append("Flag for manual review of skill progression")
        if result.flags & TECHNICAL_FLAGS:
            recommendations.append("Request complete telemetry for this session")
        if result.confidence > 0.7:
            recommendations.append("Consider temporary restriction pending investigation")
        elif result.confidence > 0.3:
            recommendations.append("Increase monitoring for this user")
        if not result.flags:
            recommendations.append("User behavior appears normal")
        return recommendations


# =============================================================================
# Baselines & Feedback
# =============================================================================
class BaselineTracker:
    """用户基线维护（仅用未被标记的提交更新）"""

    def __init__(self, store: Optional[RecordStore] = None):
        self.store = store or InMemoryStore()
        self.store.register(BASELINES, UserBaseline)

    def get_baseline(self, user_id: str) -> Optional[UserBaseline]:
        return self.store.get(BASELINES, user_id)

    def update(self, evidence: EvidenceBundle) -> UserBaseline:
        baseline = self.get_baseline(evidence.user_id) or UserBaseline(user_id=evidence.user_id)
        if not evidence.timing_deltas:
            return baseline

        sample = _mean(evidence.timing_deltas)
        baseline.sample_count += 1
        delta = sample - baseline.mean_move_time_ms
        baseline.mean_move_time_ms += delta / baseline.sample_count
        baseline.m2_move_time += delta * (sample - baseline.mean_move_time_ms)
        baseline.std_move_time_ms = math.sqrt(baseline.m2_move_time / baseline.sample_count)

        if evidence.solution_time_ms:
            n = baseline.sample_count
            baseline.mean_solution_time_ms += (evidence.solution_time_ms - baseline.mean_solution_time_ms) / n
        self.store.put(BASELINES, baseline.user_id, baseline)
        return baseline


@dataclass
class FeedbackSignal:
    """一条检测反馈"""
    signal_id: str
    user_id: str
    subject_id: str
    signal: str
    flags: List[str]
    recorded_at: datetime
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "signal_id": self.signal_id,
            "user_id": self.user_id,
            "subject_id": self.subject_id,
            "signal": self.signal,
            "flags": list(self.flags),
            "recorded_at": dump_time(self.recorded_at),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackSignal":
        return cls(
            signal_id=data["signal_id"],
            user_id=data["user_id"],
            subject_id=data["subject_id"],
            signal=data["signal"],
            flags=list(data.get("flags") or []),
            recorded_at=load_time(data["recorded_at"]),
            sequence=int(data.get("sequence", 0)),
        )


class DetectionFeedbackRecorder:
    """检测反馈（误报 / 确认信号）"""

    def __init__(self, store: Optional[RecordStore] = None, clock: Optional[Clock] = None):
        self.store = store or InMemoryStore()
        self.store.register(DETECTION_FEEDBACK, FeedbackSignal)
        self.clock = clock or utc_now
        self._lock = threading.Lock()

    @property
    def signals(self) -> List[Dict[str, Any]]:
        """按记录顺序返回全部反馈"""
        records = sorted(self.store.find(DETECTION_FEEDBACK), key=lambda s: s.sequence)
        return [r.to_dict() for r in records]

    def record_feedback(self, user_id: str, subject_id: str, signal: str,
                        flags: List[str]) -> FeedbackSignal:
        with self._lock:
            record = FeedbackSignal(
                signal_id=str(uuid.uuid4()),
                user_id=user_id,
                subject_id=subject_id,
                signal=signal,
                flags=list(flags),
                recorded_at=self.clock(),
                sequence=self.store.count(DETECTION_FEEDBACK),
            )
            self.store.put(DETECTION_FEEDBACK, record.signal_id, record)
        logger.info(f"Detection feedback {signal} for {user_id} ({subject_id})")
        return record

    def false_positive_counts(self) -> Dict[str, int]:
        """各标记的误报次数"""
        counts: Dict[str, int] = defaultdict(int)
        for s in self.store.find(DETECTION_FEEDBACK, signal="false_positive"):
            for flag in s.flags:
                counts[flag] += 1
        return dict(counts)
