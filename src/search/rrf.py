"""
Reciprocal Rank Fusion over VehicleResult lists.

RRF score = sum(weight / (k + rank + 1)), rank 0-based, summed over every
list a vehicle appears in. A vehicle repeated within one list counts once,
at its first rank, and its breakdown final_score is the fused score.
"""

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from core.exceptions import ConfigurationError
from core.logging import get_logger
from search.models import ScoreBreakdown, VehicleResult

logger = get_logger(__name__)


DEFAULT_RRF_K = 60


def _union_breakdown(a: ScoreBreakdown, b: ScoreBreakdown) -> ScoreBreakdown:
    return ScoreBreakdown(
        exact_match_score=max(a.exact_match_score, b.exact_match_score),
        semantic_score=max(a.semantic_score, b.semantic_score),
        keyword_score=max(a.keyword_score, b.keyword_score),
    )


class RRFMerger:
    """Fuses ranked candidate lists."""

    def __init__(self, k: int = DEFAULT_RRF_K):
        if k < 1:
            raise ConfigurationError(f"RRF k must be >= 1, got {k}")
        self.k = k

    def merge(
        self,
        list1: Sequence[VehicleResult],
        list2: Sequence[VehicleResult],
        weight1: float = 0.5,
        weight2: float = 0.5,
        k: Optional[int] = None,
    ) -> List[VehicleResult]:
        """
        Merge two ranked lists.

        On overlap the first list's result is kept, with the score
        breakdowns unioned (max per component).
        """
        return self._fuse([list1, list2], [weight1, weight2], k or self.k)

    def merge_multiple(
        self,
        lists: Sequence[Sequence[VehicleResult]],
        weights: Optional[Sequence[float]] = None,
        k: Optional[int] = None,
    ) -> List[VehicleResult]:
        """N-way merge. Weights are normalized to sum to 1.0 (equal if omitted)."""
        if not lists:
            return []

        if weights is None:
            weights = [1.0] * len(lists)
        if len(weights) != len(lists):
            raise ConfigurationError(
                f"Got {len(weights)} weights for {len(lists)} result lists"
            )
        if any(w < 0 for w in weights):
            raise ConfigurationError("RRF weights must be non-negative")

        total = sum(weights)
        if total <= 0:
            raise ConfigurationError("RRF weights must not all be zero")
        normalized = [w / total for w in weights]

        return self._fuse(lists, normalized, k or self.k)

    def _fuse(
        self,
        lists: Sequence[Sequence[VehicleResult]],
        weights: Sequence[float],
        k: int,
    ) -> List[VehicleResult]:
        scores: Dict[str, float] = defaultdict(float)
        merged: Dict[str, VehicleResult] = {}

        for results, weight in zip(lists, weights):
            seen = set()
            for rank, item in enumerate(results):
                vid = item.vehicle.id
                if not vid or vid in seen:
                    continue
                seen.add(vid)
                scores[vid] += weight / (k + rank + 1)
                if vid not in merged:
                    merged[vid] = item
                else:
                    existing = merged[vid]
                    merged[vid] = existing.model_copy(update={
                        "score_breakdown": _union_breakdown(existing.score_breakdown, item.score_breakdown),
                        "explanation": existing.explanation or item.explanation,
                    })

        fused = [
            merged[vid].model_copy(update={
                "score": score,
                "score_breakdown": merged[vid].score_breakdown.model_copy(update={"final_score": score}),
            })
            for vid, score in scores.items()
        ]
        fused.sort(key=lambda r: scores[r.vehicle.id], reverse=True)

        logger.debug(
            "RRF merge complete",
            inputs=[len(r) for r in lists],
            merged=len(fused),
            k=k,
        )
        return fused
