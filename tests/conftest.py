"""
Shared fixtures for the trust-and-safety test suite.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from detection.src.detection_engine import CheatFlag, DetectionResult, Severity
from evidence.src.evidence_collector import EvidenceBundle, MoveRecord
from kernel.src.ports import InMemoryNotificationSink, InMemoryReputationSource
from kernel.src.repository import InMemoryStore
from review.src.reviewer_pool import Tier
from safety.src.trust_safety_service import TrustSafetyService


HUMAN_DELTAS = [1200, 800, 6000, 1500, 2500, 900, 3100, 700, 5200, 1800]
MOVE_TYPES = ["place", "swap", "rotate", "place", "undo", "swap", "hint", "rotate", "place", "clear"]


class FrozenClock:
    """可手动推进的时钟"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def build_telemetry(deltas: List[float], puzzle_id: str = "puzzle-42") -> dict:
    moves = []
    stamp = 0
    for i, delta in enumerate(deltas):
        stamp += delta
        moves.append({"type": MOVE_TYPES[i % len(MOVE_TYPES)], "from": i, "to": i + 1,
                      "timestamp": stamp})
    return {
        "puzzleId": puzzle_id,
        "puzzleType": "sliding",
        "moves": moves,
        "startTime": 0,
        "endTime": stamp,
        "deviceInfo": {"platform": "web"},
    }


def make_detection(user_id: str = "user-1", session_id: str = "sess-1",
                   puzzle_id: str = "puzzle-42", severity: Severity = Severity.MEDIUM,
                   confidence: float = 0.5, flags=(CheatFlag.TIMING_ANOMALY,),
                   detected_at: Optional[datetime] = None) -> DetectionResult:
    evidence = EvidenceBundle(
        user_id=user_id,
        session_id=session_id,
        puzzle_id=puzzle_id,
        puzzle_type="sliding",
        moves=(MoveRecord(type="place", timestamp=100.0),),
        timing_deltas=(100.0,),
        solution_time_ms=100.0,
        start_time_ms=0.0,
        end_time_ms=100.0,
    )
    return DetectionResult(
        detection_id=f"det-{user_id}-{session_id}",
        user_id=user_id,
        puzzle_id=puzzle_id,
        session_id=session_id,
        flags=frozenset(flags),
        severity=severity,
        confidence=confidence,
        evidence=evidence,
        detected_at=detected_at or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifications():
    return InMemoryNotificationSink()


@pytest.fixture
def reputation():
    return InMemoryReputationSource(default_reputation=50, reputations={
        "mod-junior": 150, "mod-senior": 300, "mod-expert": 500,
    })


@pytest.fixture
def service(store, clock, notifications, reputation):
    return TrustSafetyService(store=store, clock=clock, notifications=notifications,
                              reputation=reputation)


@pytest.fixture
def staffed_service(service):
    """已登记审核员与版主的服务"""
    service.reviewers.register("rev-1", Tier.REVIEWER)
    service.reviewers.register("senior-1", Tier.SENIOR)
    service.reviewers.register("expert-1", Tier.EXPERT)
    service.community.register_moderator("mod-junior", Tier.JUNIOR)
    service.community.register_moderator("mod-senior", Tier.SENIOR)
    service.community.register_moderator("mod-expert", Tier.EXPERT)
    return service


@pytest.fixture
def human_telemetry():
    return build_telemetry(HUMAN_DELTAS)


@pytest.fixture
def bot_telemetry():
    return build_telemetry([40] * 10)
