"""
Rejection sampler for pendant branch lengths.

The sampler draws from the density proportional to exp(l(t)) for a fitted
BSM curve l, restricted to the interval where l stays within a threshold of
its maximum. Because the curve is analytic, the normalizing constant and
the exact log-density of every draw are known, which is what the
importance weight of an attachment proposal needs.
"""

import logging
import numpy as np
from scipy import integrate, optimize
from typing import Callable, Sequence, Tuple

from .curvefit import BSMCurve, DEFAULT_INIT, fit_bsm_log_likelihood
from .errors import ConvergenceError

logger = logging.getLogger(__name__)


class CurveFitRejectionSampler:
    """
    Samples branch lengths from a normalized, truncated BSM curve.

    Attributes:
        curve: The fitted curve
        ml_t: Maximizing branch length of the curve
        ml_ll: Curve value at ml_t
        t_min: Left bound of the support
        t_max: Right bound of the support
        auc: Integral of exp(l(t) - ml_ll) over [t_min, t_max]
    """

    def __init__(
        self,
        curve: BSMCurve,
        rng: np.random.Generator,
        ll_threshold: float = -10.0,
        upper: float = 10.0,
        max_bound_iters: int = 100,
        tolerance: float = 1e-3,
        max_attempts: int = 100000
    ):
        """
        Args:
            curve: Fitted log-likelihood curve
            rng: Random generator used for every draw
            ll_threshold: Bounds are placed where the curve drops this far
                (a negative number) below its maximum
            upper: Right end of the right bound's bracket
            max_bound_iters: Iteration cap for each bound search
            tolerance: Largest acceptable quadrature error estimate
            max_attempts: Cap on rejection sampling proposals per draw

        Raises:
            ConvergenceError: a bound cannot be bracketed or found within
                the iteration cap, or the integration error is too large
        """
        if ll_threshold >= 0:
            raise ValueError(f"ll_threshold must be negative, got {ll_threshold}")
        self.curve = curve
        self.rng = rng
        self.ll_threshold = ll_threshold
        self.upper = upper
        self.max_bound_iters = max_bound_iters
        self.tolerance = tolerance
        self.max_attempts = max_attempts

        self.ml_t = curve.ml_t()
        self.ml_ll = curve.log_like(self.ml_t)
        if not np.isfinite(self.ml_ll):
            raise ConvergenceError(f"Curve maximum is not finite: {self.ml_ll}")

        self.t_min, self.t_max = self._find_bounds()
        self.auc = self._integrate()
        self._log_auc = np.log(self.auc)

        logger.debug(
            "Rejection sampler: ML t=%g, support [%g, %g], auc=%g",
            self.ml_t, self.t_min, self.t_max, self.auc
        )

    @classmethod
    def fit(
        cls,
        log_like: Callable[[float], float],
        rng: np.random.Generator,
        init: BSMCurve = DEFAULT_INIT,
        trial_lengths: Sequence[float] = (0.1, 0.15, 0.5),
        ll_threshold: float = -10.0,
        upper: float = 10.0,
        **kwargs
    ) -> "CurveFitRejectionSampler":
        """
        Fit a curve to `log_like` and build a sampler from it.

        The fit samples `log_like` far enough along the tail that the
        fitted curve falls below `ll_threshold` before `upper`.
        """
        if ll_threshold >= 0:
            raise ValueError(f"ll_threshold must be negative, got {ll_threshold}")
        curve, _ = fit_bsm_log_likelihood(
            log_like, init, trial_lengths, tail_drop=-ll_threshold, max_length=upper
        )
        return cls(curve, rng, ll_threshold=ll_threshold, upper=upper, **kwargs)

    def _excess(self, t: float) -> float:
        return self.curve.log_like(t) - self.ml_ll - self.ll_threshold

    def _solve(self, a: float, b: float, side: str) -> float:
        try:
            root, result = optimize.toms748(
                self._excess, a, b, maxiter=self.max_bound_iters, full_output=True
            )
        except (RuntimeError, ValueError) as e:
            raise ConvergenceError(f"Could not find {side} bound in [{a}, {b}]: {e}") from e
        if not result.converged:
            raise ConvergenceError(f"{side.capitalize()} bound search did not converge")
        return float(root)

    def _find_bounds(self) -> Tuple[float, float]:
        if self.ml_t >= self.upper:
            raise ConvergenceError(f"Curve maximum {self.ml_t} is beyond {self.upper}")
        if self._excess(self.upper) >= 0:
            raise ConvergenceError(
                f"Curve is still within {-self.ll_threshold} of its maximum at {self.upper}"
            )
        t_max = self._solve(self.ml_t, self.upper, "right")

        # The curve is -inf at t = 0 when b = 0
        lo = 0.0 if np.isfinite(self._excess(0.0)) else self.ml_t * 1e-12
        if self.ml_t == 0 or self._excess(lo) >= 0:
            t_min = 0.0
        else:
            t_min = self._solve(lo, self.ml_t, "left")

        return t_min, t_max

    def _integrate(self) -> float:
        auc, error = integrate.quad(
            lambda t: np.exp(self.curve.log_like(t) - self.ml_ll),
            self.t_min, self.t_max
        )
        if error > self.tolerance:
            raise ConvergenceError(f"Integration error {error} exceeds tolerance {self.tolerance}")
        if not auc > 0:
            raise ConvergenceError(f"Integral of the curve is not positive: {auc}")
        return auc

    def log_density(self, t: float) -> float:
        """Log-density of the sampling distribution at t."""
        if not self.t_min <= t <= self.t_max:
            return -np.inf
        return self.curve.log_like(t) - self.ml_ll - self._log_auc

    def sample(self) -> Tuple[float, float]:
        """
        Draw one branch length.

        Returns:
            Tuple of (branch length, its log-density)
        """
        for _ in range(self.max_attempts):
            t = self.rng.uniform(self.t_min, self.t_max)
            y = self.rng.uniform(0.0, 1.0)
            log_f = self.curve.log_like(t) - self.ml_ll
            if y <= np.exp(log_f):
                return float(t), float(log_f - self._log_auc)
        raise ConvergenceError(f"No sample accepted after {self.max_attempts} attempts")
