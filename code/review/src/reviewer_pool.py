"""
PuzzleGuard Reviewer Pool
审核员 / 版主名册 - 身份、等级、专长，仅用于分配
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from kernel.src.repository import REVIEWERS, InMemoryStore, RecordStore

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    """审核等级"""
    JUNIOR = "junior"
    REVIEWER = "reviewer"
    SENIOR = "senior"
    EXPERT = "expert"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def next_tier(self) -> "Tier":
        """升级目标（最高为 ADMIN）"""
        order = sorted(_TIER_RANK, key=_TIER_RANK.get)
        idx = order.index(self)
        return order[min(idx + 1, len(order) - 1)]


_TIER_RANK = {
    Tier.JUNIOR: 0,
    Tier.REVIEWER: 1,
    Tier.SENIOR: 2,
    Tier.EXPERT: 3,
    Tier.ADMIN: 4,
}


@dataclass
class Reviewer:
    """审核员"""
    reviewer_id: str
    tier: Tier
    specializations: List[str] = field(default_factory=list)
    max_load: Optional[int] = None
    active: bool = True

    def to_dict(self) -> Dict:
        return {
            "reviewer_id": self.reviewer_id,
            "tier": self.tier.value,
            "specializations": list(self.specializations),
            "max_load": self.max_load,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reviewer":
        return cls(
            reviewer_id=data["reviewer_id"],
            tier=Tier(data["tier"]),
            specializations=list(data.get("specializations") or []),
            max_load=data.get("max_load"),
            active=data.get("active", True),
        )


class ReviewerPool:
    """
    审核员名册

    Members are persisted in ``collection`` (reviewers and moderators use
    separate collections of the same store).
    """

    def __init__(self, default_max_load: int = 20, store: Optional[RecordStore] = None,
                 collection: str = REVIEWERS):
        self.default_max_load = default_max_load
        self.store = store or InMemoryStore()
        self.collection = collection
        self.store.register(collection, Reviewer)
        self._lock = threading.Lock()

    def register(self, reviewer_id: str, tier: Tier,
                 specializations: Optional[List[str]] = None,
                 max_load: Optional[int] = None) -> Reviewer:
        reviewer = Reviewer(
            reviewer_id=reviewer_id,
            tier=Tier(tier),
            specializations=list(specializations or []),
            max_load=max_load,
        )
        with self._lock:
            self.store.put(self.collection, reviewer_id, reviewer)
        logger.info(f"Reviewer registered: {reviewer_id} ({reviewer.tier.value})")
        return reviewer

    def deactivate(self, reviewer_id: str) -> bool:
        with self._lock:
            reviewer = self.store.get(self.collection, reviewer_id)
            if not reviewer:
                return False
            reviewer.active = False
            self.store.put(self.collection, reviewer_id, reviewer)
            return True

    def get(self, reviewer_id: str) -> Optional[Reviewer]:
        return self.store.get(self.collection, reviewer_id)

    def list(self, min_tier: Optional[Tier] = None) -> List[Reviewer]:
        reviewers = self.store.find(self.collection)
        if min_tier is not None:
            reviewers = [r for r in reviewers if r.tier.rank >= Tier(min_tier).rank]
        return reviewers

    def capacity_of(self, reviewer: Reviewer) -> int:
        return reviewer.max_load if reviewer.max_load is not None else self.default_max_load

    def select(self, min_tier: Tier, load_of: Callable[[str], int],
               specialization: Optional[str] = None,
               exclude: Optional[Iterable[str]] = None) -> Optional[Reviewer]:
        """
        选择负载最低的可用审核员

        Load is advisory: two concurrent selections may pick the same reviewer
        and briefly overshoot the cap.
        """
        excluded = set(exclude or ())
        candidates = []
        for reviewer in self.list(min_tier=min_tier):
            if not reviewer.active or reviewer.reviewer_id in excluded:
                continue
            load = load_of(reviewer.reviewer_id)
            if load >= self.capacity_of(reviewer):
                continue
            # 专长匹配优先，其次等级接近、负载低
            matches = specialization is not None and specialization in reviewer.specializations
            candidates.append((not matches, reviewer.tier.rank, load, reviewer.reviewer_id, reviewer))

        if not candidates:
            return None
        candidates.sort(key=lambda c: c[:4])
        return candidates[0][4]
