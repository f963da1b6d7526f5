"""
DiversityEnhancer: cap repeated makes and models in a ranked list.
"""

from collections import Counter
from typing import List, Optional, Sequence

from core.exceptions import ConfigurationError
from core.logging import get_logger
from core.utils import mean
from search.models import DiversityStats, VehicleResult

logger = get_logger(__name__)


def make_key(result: VehicleResult) -> str:
    return result.vehicle.make.strip().lower()


def model_key(result: VehicleResult) -> str:
    return f"{make_key(result)}:{result.vehicle.model.strip().lower()}"


class DiversityEnhancer:
    """Greedy single-pass diversity filter."""

    def ensure_diversity(
        self,
        results: Sequence[VehicleResult],
        max_per_make: int = 3,
        max_per_model: int = 2,
        max_results: Optional[int] = None,
    ) -> List[VehicleResult]:
        """
        Admit results in score order while both the make and the
        (make, model) counters are under their caps.

        Ties keep their input order, so the output is deterministic.

        Raises:
            ConfigurationError: If either cap is not positive, or max_results
                is negative.
        """
        if max_per_make <= 0 or max_per_model <= 0:
            raise ConfigurationError(
                f"max_per_make and max_per_model must be positive (got {max_per_make}, {max_per_model})"
            )
        if max_results is not None and max_results < 0:
            raise ConfigurationError(f"max_results must not be negative (got {max_results})")
        if not results or max_results == 0:
            return []

        make_counts: Counter = Counter()
        model_counts: Counter = Counter()
        diverse: List[VehicleResult] = []

        for result in sorted(results, key=lambda r: r.score, reverse=True):
            make, model = make_key(result), model_key(result)
            if make_counts[make] >= max_per_make or model_counts[model] >= max_per_model:
                continue

            diverse.append(result)
            make_counts[make] += 1
            model_counts[model] += 1
            if max_results is not None and len(diverse) >= max_results:
                break

        logger.info(
            "Applied diversity",
            before=len(results),
            after=len(diverse),
            max_per_make=max_per_make,
            max_per_model=max_per_model,
        )
        return diverse

    def analyze_diversity(self, results: Sequence[VehicleResult]) -> DiversityStats:
        if not results:
            return DiversityStats()

        make_counts = Counter(make_key(r) for r in results)
        model_counts = Counter(model_key(r) for r in results)
        return DiversityStats(
            total_results=len(results),
            unique_makes=len(make_counts),
            unique_models=len(model_counts),
            max_per_make=max(make_counts.values()),
            max_per_model=max(model_counts.values()),
            average_per_make=mean(make_counts.values()),
            average_per_model=mean(model_counts.values()),
        )
