"""
PuzzleGuard Evidence Collector
证据收集 - 将一次提交的遥测数据整理为不可变的证据包

输入遥测:
    {puzzleId, puzzleType, moves: [{type, from?, to?, value?, timestamp}],
     solutionTime, startTime, endTime, deviceInfo?, browserInfo?}
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from config.settings import RECORD_SCHEMA_VERSION
from kernel.src.errors import ValidationFailure

logger = logging.getLogger(__name__)


def _to_millis(value: Any) -> Optional[float]:
    """时间戳统一为毫秒（支持数字与 ISO 字符串）"""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationFailure("invalid_telemetry", f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp() * 1000.0
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000.0
        except ValueError:
            raise ValidationFailure("invalid_telemetry", f"Invalid timestamp: {value!r}")
    raise ValidationFailure("invalid_telemetry", f"Invalid timestamp: {value!r}")


def _pick(data: Dict[str, Any], camel: str, snake: str, default=None):
    if camel in data:
        return data[camel]
    return data.get(snake, default)


# =============================================================================
# Data Classes
# =============================================================================
@dataclass(frozen=True)
class MoveRecord:
    """单步操作"""
    type: str
    timestamp: Optional[float]
    from_pos: Any = None
    to_pos: Any = None
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "from": self.from_pos,
            "to": self.to_pos,
            "value": self.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MoveRecord":
        return cls(
            type=str(data.get("type", "unknown")),
            timestamp=_to_millis(data.get("timestamp")),
            from_pos=data.get("from"),
            to_pos=data.get("to"),
            value=data.get("value"),
        )


@dataclass(frozen=True)
class EvidenceBundle:
    """证据包（创建后不可修改）"""
    user_id: str
    session_id: str
    puzzle_id: str
    puzzle_type: Optional[str]
    moves: Tuple[MoveRecord, ...]
    timing_deltas: Tuple[float, ...]
    solution_time_ms: Optional[float]
    start_time_ms: Optional[float]
    end_time_ms: Optional[float]
    device_info: Dict[str, Any] = field(default_factory=dict)
    browser_info: Dict[str, Any] = field(default_factory=dict)
    # 谜题侧提供的最优解信息（可选）
    optimal_move_count: Optional[int] = None
    optimal_moves: Optional[int] = None

    @property
    def has_moves(self) -> bool:
        return len(self.moves) > 0

    @property
    def has_timing(self) -> bool:
        return len(self.timing_deltas) > 0

    @property
    def move_types(self) -> List[str]:
        return [m.type for m in self.moves]

    @property
    def move_signature(self) -> str:
        pattern = "|".join(f"{m.type}:{m.from_pos}:{m.to_pos}:{m.value}" for m in self.moves)
        return hashlib.sha256(pattern.encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "puzzle_id": self.puzzle_id,
            "puzzle_type": self.puzzle_type,
            "moves": [m.to_dict() for m in self.moves],
            "timing_deltas": list(self.timing_deltas),
            "solution_time_ms": self.solution_time_ms,
            "start_time_ms": self.start_time_ms,
            "end_time_ms": self.end_time_ms,
            "device_info": dict(self.device_info),
            "browser_info": dict(self.browser_info),
            "optimal_move_count": self.optimal_move_count,
            "optimal_moves": self.optimal_moves,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvidenceBundle":
        return cls(
            user_id=data["user_id"],
            session_id=data["session_id"],
            puzzle_id=data["puzzle_id"],
            puzzle_type=data.get("puzzle_type"),
            moves=tuple(MoveRecord.from_dict(m) for m in data.get("moves", [])),
            timing_deltas=tuple(float(t) for t in data.get("timing_deltas", [])),
            solution_time_ms=data.get("solution_time_ms"),
            start_time_ms=data.get("start_time_ms"),
            end_time_ms=data.get("end_time_ms"),
            device_info=dict(data.get("device_info") or {}),
            browser_info=dict(data.get("browser_info") or {}),
            optimal_move_count=data.get("optimal_move_count"),
            optimal_moves=data.get("optimal_moves"),
        )


# =============================================================================
# Evidence Collector
# =============================================================================
class EvidenceCollector:
    """证据收集器"""

    def collect(self, user_id: str, session_id: str,
                telemetry: Dict[str, Any]) -> EvidenceBundle:
        """整理遥测数据为证据包；缺失走法或计时数据不会报错，交由检测引擎标记"""
        if not isinstance(telemetry, dict):
            raise ValidationFailure("invalid_telemetry", "Telemetry must be an object")

        puzzle_id = _pick(telemetry, "puzzleId", "puzzle_id")
        if not puzzle_id:
            raise ValidationFailure("invalid_telemetry", "puzzleId is required")

        raw_moves = telemetry.get("moves")
        if raw_moves is None:
            raw_moves = []
        if not isinstance(raw_moves, list):
            raise ValidationFailure("invalid_telemetry", "moves must be a list")

        moves = tuple(MoveRecord.from_dict(m) for m in raw_moves if isinstance(m, dict))
        start_ms = _to_millis(_pick(telemetry, "startTime", "start_time"))
        end_ms = _to_millis(_pick(telemetry, "endTime", "end_time"))

        solution_time = _pick(telemetry, "solutionTime", "solution_time")
        if solution_time is None and start_ms is not None and end_ms is not None:
            solution_time = end_ms - start_ms

        bundle = EvidenceBundle(
            user_id=user_id,
            session_id=session_id,
            puzzle_id=str(puzzle_id),
            puzzle_type=_pick(telemetry, "puzzleType", "puzzle_type"),
            moves=moves,
            timing_deltas=self.compute_timing_deltas(moves, start_ms),
            solution_time_ms=float(solution_time) if solution_time is not None else None,
            start_time_ms=start_ms,
            end_time_ms=end_ms,
            device_info=dict(_pick(telemetry, "deviceInfo", "device_info") or {}),
            browser_info=dict(_pick(telemetry, "browserInfo", "browser_info") or {}),
            optimal_move_count=_pick(telemetry, "optimalMoveCount", "optimal_move_count"),
            optimal_moves=_pick(telemetry, "optimalMoves", "optimal_moves"),
        )

        logger.debug(
            f"Evidence collected for {user_id}/{session_id}: "
            f"moves={len(bundle.moves)}, deltas={len(bundle.timing_deltas)}"
        )
        return bundle

    @staticmethod
    def compute_timing_deltas(moves: Tuple[MoveRecord, ...],
                              start_ms: Optional[float]) -> Tuple[float, ...]:
        """相邻步之间的间隔（毫秒），首步从开始时间算起"""
        stamps = [m.timestamp for m in moves if m.timestamp is not None]
        if not stamps:
            return ()

        deltas = []
        previous = start_ms
        for stamp in stamps:
            if previous is not None:
                deltas.append(max(0.0, stamp - previous))
            previous = stamp
        return tuple(deltas)
