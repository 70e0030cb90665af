"""
Analytic approximation of a branch length log-likelihood curve.

The binary symmetric model (BSM) gives the log-likelihood of a branch of
length t between two sequences over a two-letter alphabet, with c sites
agreeing and m sites differing, substitution rate r and offset b:

    l(t) = c * log((1 + exp(-r (t + b))) / 2) + m * log((1 - exp(-r (t + b))) / 2)

Four parameters are enough to match the shape of real single-branch
likelihood curves closely, and the curve has a closed form maximum.
"""

import logging
import numpy as np
from dataclasses import dataclass, replace
from scipy import optimize
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ConvergenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BSMCurve:
    """Parameters of a binary symmetric model log-likelihood curve."""

    c: float
    """Weight of the agreeing term; must exceed m"""

    m: float
    """Weight of the differing term"""

    r: float
    """Rate"""

    b: float
    """Offset added to the branch length"""

    def log_like(self, t):
        """Log-likelihood at branch length t (scalar or array)."""
        e = np.exp(-self.r * (np.asarray(t, dtype=float) + self.b))
        with np.errstate(divide="ignore"):
            result = self.c * np.log((1 + e) / 2) + self.m * np.log((1 - e) / 2)
        return float(result) if np.ndim(result) == 0 else result

    def ml_t(self) -> float:
        """Branch length maximizing the curve, clamped at zero."""
        t = -np.log((self.c - self.m) / (self.c + self.m)) / self.r - self.b
        return max(float(t), 0.0)

    def scaled(self, factor: float) -> "BSMCurve":
        return replace(self, c=self.c * factor, m=self.m * factor)


DEFAULT_INIT = BSMCurve(c=1500.0, m=1000.0, r=1.0, b=0.5)

MAX_BRACKET_STEPS = 20
MIN_TRIAL_LENGTH = 1e-6
MIN_WEIGHT = 1e-2


def _sample(log_like: Callable[[float], float], points: Dict[float, float], t: float):
    value = log_like(t)
    if not np.isfinite(value):
        raise ConvergenceError(f"Non-finite log-likelihood {value} at branch length {t}")
    points[t] = float(value)


def _bracket(log_like: Callable[[float], float], points: Dict[float, float]):
    """Add points until the largest observed value is not at either end."""
    for _ in range(MAX_BRACKET_STEPS):
        ts = sorted(points)
        best = max(ts, key=points.get)
        if best == ts[0] and ts[0] / 2 >= MIN_TRIAL_LENGTH:
            _sample(log_like, points, ts[0] / 2)
        elif best == ts[-1]:
            _sample(log_like, points, ts[-1] * 2)
        else:
            return
    logger.debug("Maximum not bracketed after %d steps", MAX_BRACKET_STEPS)


def _extend_tail(
    log_like: Callable[[float], float],
    points: Dict[float, float],
    tail_drop: float,
    max_length: float
) -> List[float]:
    """
    Double the longest length until the observed log-likelihood is more
    than `tail_drop` below the best point, stopping at `max_length`.
    """
    added = []
    t = max(points)
    while t < max_length and points[t] > max(points.values()) - tail_drop:
        t = min(2 * t, max_length)
        _sample(log_like, points, t)
        added.append(t)
    return added


def _least_squares(ts: np.ndarray, ys: np.ndarray, weights: np.ndarray, x0: np.ndarray):
    def residuals(p):
        m, delta, r, b = p
        predicted = BSMCurve(c=m + delta, m=m, r=r, b=b).log_like(ts)
        return weights * (predicted - ys)

    if not np.all(np.isfinite(residuals(x0))):
        raise ConvergenceError("Initial curve is not finite at the trial points")

    try:
        result = optimize.least_squares(
            residuals,
            x0,
            bounds=([1e-10, 1e-10, 1e-10, 0.0], np.inf),
            x_scale="jac"
        )
    except ValueError as e:
        raise ConvergenceError(f"Curve fit failed: {e}") from e

    if result.status < 0 or not np.all(np.isfinite(result.x)):
        raise ConvergenceError(f"Curve fit failed: {result.message}")
    return result


def _curve(x: np.ndarray) -> BSMCurve:
    m, delta, r, b = x
    return BSMCurve(c=float(m + delta), m=float(m), r=float(r), b=float(b))


def _falls_by(curve: BSMCurve, drop: float, t: float) -> bool:
    return curve.log_like(t) < curve.log_like(curve.ml_t()) - drop


def fit_bsm_log_likelihood(
    log_like: Callable[[float], float],
    init: BSMCurve = DEFAULT_INIT,
    trial_lengths: Sequence[float] = (0.1, 0.15, 0.5),
    tail_drop: Optional[float] = None,
    max_length: float = 10.0
) -> Tuple[BSMCurve, List[Tuple[float, float]]]:
    """
    Fit a BSM curve to a branch length log-likelihood function.

    The initial curve is rescaled to agree with the best trial point, trial
    points are extended (halving or doubling) until they bracket the
    maximum, and all four parameters are then fitted by least squares,
    weighting each point by its likelihood relative to the best one.

    With `tail_drop` set, the longest length is also doubled (up to
    `max_length`) until log_like falls more than `tail_drop` below its best
    observed value. Those tail points get full weight, and if the fitted
    curve still does not fall by `tail_drop` before `max_length` the fit is
    repeated with every point at full weight.

    Args:
        log_like: Log-likelihood as a function of branch length
        init: Starting parameters
        trial_lengths: Initial branch lengths to evaluate (all positive)
        tail_drop: Required fall of the curve from its maximum (positive)
        max_length: Longest branch length evaluated for the tail

    Returns:
        Tuple of (fitted curve, evaluated (length, log-likelihood) points)

    Raises:
        ConvergenceError: log_like is not finite at an evaluated point, or
            the fit fails
    """
    if len(trial_lengths) == 0 or min(trial_lengths) <= 0:
        raise ValueError("Trial lengths must be positive")
    if tail_drop is not None and tail_drop <= 0:
        raise ValueError(f"tail_drop must be positive, got {tail_drop}")

    points: Dict[float, float] = {}
    for t in trial_lengths:
        _sample(log_like, points, float(t))

    best_t = max(points, key=points.get)
    model_ll = init.log_like(best_t)
    if not np.isfinite(model_ll) or model_ll == 0:
        raise ConvergenceError("Initial curve cannot be rescaled")
    curve = init.scaled(points[best_t] / model_ll)

    _bracket(log_like, points)
    tail: List[float] = []
    if tail_drop is not None:
        tail = _extend_tail(log_like, points, tail_drop, max_length)

    ts = np.array(sorted(points))
    ys = np.array([points[t] for t in ts])
    # Far points keep a small weight so every parameter stays identifiable
    weights = np.sqrt(np.maximum(np.exp(ys - ys.max()), MIN_WEIGHT))
    weights[np.isin(ts, tail)] = 1.0

    x0 = np.array([curve.m, curve.c - curve.m, curve.r, curve.b])
    result = _least_squares(ts, ys, weights, x0)
    fitted = _curve(result.x)

    if tail_drop is not None and not _falls_by(fitted, tail_drop, max_length):
        logger.debug("Fitted %s does not fall by %g before %g; refitting unweighted",
                     fitted, tail_drop, max_length)
        result = _least_squares(ts, ys, np.ones_like(ys), result.x)
        fitted = _curve(result.x)

    logger.debug("Fitted %s to %d points (cost %g)", fitted, len(ts), result.cost)
    return fitted, list(zip(ts.tolist(), ys.tolist()))
