"""
Helpers shared by the RANSAC estimators.
"""

from __future__ import annotations

import math
from typing import Callable, Optional

import numpy as np

StopCallback = Optional[Callable[[], bool]]


def compute_ransac_iterations(
    inlier_ratio: float,
    num_samples: int,
    desired_success_rate: float = 0.99,
) -> int:
    """
    Number of iterations needed to draw one all-inlier sample with the
    desired probability: log(1 - p) / log(1 - w^k).
    """
    if not 0.0 < inlier_ratio <= 1.0:
        raise ValueError("inlier_ratio must be in (0, 1]")
    if not 0.0 < desired_success_rate < 1.0:
        raise ValueError("desired_success_rate must be in (0, 1)")
    prob_all_good = inlier_ratio ** num_samples
    if prob_all_good >= 1.0:
        return 1
    num_iterations = math.log(1.0 - desired_success_rate) / math.log(1.0 - prob_all_good)
    return int(math.ceil(num_iterations))


def adaptive_iteration_limit(
    max_iterations: int,
    num_inliers: int,
    num_points: int,
    sample_size: int,
) -> int:
    """
    Iteration cap after a new best hypothesis: the iterations needed for its
    inlier ratio, never more than `max_iterations`.
    """
    if num_inliers <= 0 or num_points <= 0:
        return max_iterations
    needed = compute_ransac_iterations(min(1.0, num_inliers / float(num_points)), sample_size)
    return min(max_iterations, needed)


def make_rng(seed: Optional[int]) -> np.random.Generator:
    return np.random.default_rng(seed)


def draw_sample(rng: np.random.Generator, num_items: int, sample_size: int) -> np.ndarray:
    """Draw `sample_size` distinct indices from range(num_items)."""
    return rng.choice(num_items, size=sample_size, replace=False)


def should_stop_now(should_stop: StopCallback) -> bool:
    return should_stop is not None and bool(should_stop())


__all__ = [
    "StopCallback",
    "compute_ransac_iterations",
    "adaptive_iteration_limit",
    "make_rng",
    "draw_sample",
    "should_stop_now",
]
