"""
Branch length optimization for a leaf attached to a fixed edge.

Attaching a leaf part way along an edge forms a tripod: the partial below
the edge, the partial above it and the new leaf meet at one point. The
optimizer maximizes the tripod log-likelihood one coordinate at a time,
over the distal offset along the edge or over the pendant length.
"""

import logging
from scipy import optimize
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TOLERANCE = 1e-3


def minimize(
    fn: Callable[[float], float],
    start: float,
    left: float,
    right: float,
    max_iters: int = 5
) -> float:
    """
    Minimize a function of one variable on [left, right].

    Both endpoints are evaluated first. The start point is then moved
    toward the better endpoint by bisection until it improves on both
    endpoints. Brent's method then polishes it from the bracket
    (left, start, right), using the iterations left over from bisection.
    The returned point is never worse than either endpoint.

    Args:
        fn: Function to minimize
        start: Starting point within [left, right]
        left: Lower bound
        right: Upper bound
        max_iters: Iteration budget shared by bisection and polishing

    Returns:
        The best point found
    """
    left_y = fn(left)
    right_y = fn(right)
    min_x, min_y = (left, left_y) if left_y < right_y else (right, right_y)

    if right - left < TOLERANCE:
        return min_x

    start = min(max(start, left), right)
    if abs(start - min_x) < TOLERANCE:
        start = (left + right) / 2

    for i in range(max_iters):
        start_y = fn(start)
        if start_y < min_y:
            result = optimize.minimize_scalar(
                fn,
                bracket=(left, start, right),
                method="brent",
                options={"xtol": TOLERANCE / 10, "maxiter": max_iters - i}
            )
            logger.debug("Bisection step %d improved on endpoints; Brent gave %g", i, result.x)
            if result.fun < start_y:
                return float(result.x)
            return start

        if abs(start - min_x) < TOLERANCE:
            break
        start = (start + min_x) / 2

    return min_x


class AttachmentOptimizer:
    """
    Coordinate-wise maximizer of the attachment log-likelihood on one edge.

    Attributes:
        edge_length: Length d of the edge; the distal offset lies in [0, d]
        max_pendant: Upper bound of the pendant search interval (default 2d)
    """

    def __init__(
        self,
        log_like: Callable[[float, float], float],
        edge_length: float,
        max_pendant: Optional[float] = None,
        on_close: Optional[Callable[[], None]] = None
    ):
        """
        Args:
            log_like: Function of (distal, pendant) returning a log-likelihood
            edge_length: Length of the edge being attached to
            max_pendant: Upper bound for the pendant length search
            on_close: Called once when the optimizer is closed, to release
                any resources held by `log_like`
        """
        if edge_length < 0:
            raise ValueError(f"Edge length must be non-negative, got {edge_length}")
        self._log_like = log_like
        self.edge_length = edge_length
        self.max_pendant = 2.0 * edge_length if max_pendant is None else max_pendant
        self._on_close = on_close

    def log_like(self, distal: float, pendant: float) -> float:
        return self._log_like(distal, pendant)

    def optimize_distal(self, start: float, pendant: float, max_iters: int = 10) -> float:
        """Best distal offset in [0, d] with the pendant length held fixed."""
        return minimize(
            lambda distal: -self._log_like(distal, pendant),
            start, 0.0, self.edge_length, max_iters
        )

    def optimize_pendant(self, distal: float, start: float, max_iters: int = 10) -> float:
        """Best pendant length in [0, max_pendant] with the distal offset held fixed."""
        return minimize(
            lambda pendant: -self._log_like(distal, pendant),
            start, 0.0, self.max_pendant, max_iters
        )

    def close(self):
        if self._on_close is not None:
            self._on_close()
            self._on_close = None

    def __enter__(self) -> "AttachmentOptimizer":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
