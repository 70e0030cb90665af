"""
Dense partial likelihood vectors.

A partial likelihood vector holds one value per (rate category, site,
state), stored row-major in that order, together with the per-site log
scale factors accumulated while it was computed.
"""

import numpy as np
from typing import Optional, Sequence


class LikelihoodVector:
    """
    Partial likelihood vector of shape (n_rates, n_sites, n_states).

    Attributes:
        values: Array of likelihood mass, indexed [rate, site, state]
        log_scale: Per-site log scale factors; the true partial is
            values * exp(log_scale[site])
    """

    __slots__ = ("values", "log_scale")

    def __init__(
        self,
        n_rates: int,
        n_sites: int,
        n_states: int,
        values: Optional[np.ndarray] = None,
        log_scale: Optional[np.ndarray] = None
    ):
        shape = (n_rates, n_sites, n_states)
        if values is None:
            self.values = np.zeros(shape)
        else:
            self.values = np.array(values, dtype=float).reshape(shape)

        if log_scale is None:
            self.log_scale = np.zeros(n_sites)
        else:
            self.log_scale = np.array(log_scale, dtype=float).reshape(n_sites)

    @property
    def n_rates(self) -> int:
        return self.values.shape[0]

    @property
    def n_sites(self) -> int:
        return self.values.shape[1]

    @property
    def n_states(self) -> int:
        return self.values.shape[2]

    @property
    def shape(self) -> tuple:
        return self.values.shape

    def __len__(self) -> int:
        return self.values.size

    def __getitem__(self, index):
        return self.values[index]

    def __setitem__(self, index, value):
        self.values[index] = value

    def copy(self) -> "LikelihoodVector":
        return LikelihoodVector(
            self.n_rates, self.n_sites, self.n_states,
            values=self.values.copy(),
            log_scale=self.log_scale.copy()
        )

    def log_dot(
        self,
        other: "LikelihoodVector",
        rate_weights: Optional[Sequence[float]] = None
    ) -> float:
        """
        Log of the rate-weighted vector product with another partial vector.

        Computes

            sum_sites log( sum_rates w_r sum_states x[r, i, k] * y[r, i, k] )

        plus the log scale factors of both vectors.

        Args:
            other: Vector of the same shape
            rate_weights: One weight per rate category, summing to 1
                (default: equiprobable categories)

        Returns:
            Log-likelihood; -inf when some site has zero likelihood
        """
        if other.shape != self.shape:
            raise ValueError(
                f"Cannot combine likelihood vectors of shape {self.shape} "
                f"and {other.shape}"
            )

        if rate_weights is None:
            rate_weights = np.full(self.n_rates, 1.0 / self.n_rates)
        else:
            rate_weights = np.asarray(rate_weights, dtype=float)
            if rate_weights.shape != (self.n_rates,):
                raise ValueError(
                    f"Expected {self.n_rates} rate weights, got {rate_weights.size}"
                )

        # (rates, sites) after summing states
        per_rate = np.einsum("rsk,rsk->rs", self.values, other.values)
        site_likelihoods = rate_weights @ per_rate

        with np.errstate(divide="ignore"):
            site_log_likelihoods = np.log(np.maximum(site_likelihoods, 0.0))

        scale = self.log_scale + other.log_scale
        return float(np.sum(site_log_likelihoods + scale))

    def __repr__(self) -> str:
        return (
            f"LikelihoodVector(n_rates={self.n_rates}, "
            f"n_sites={self.n_sites}, n_states={self.n_states})"
        )
