"""
Substitution models and among-site rate distributions.

Models are reversible continuous-time Markov chains described by symmetric
exchangeabilities and stationary frequencies. The likelihood engine only
reads their eigendecomposition and frequencies.
"""

import numpy as np
from scipy import special, stats
from typing import Optional, Sequence, Tuple

DNA = "ACGT"


class SubstitutionModel:
    """
    Reversible substitution model.

    The rate matrix is Q_ij = s_ij * pi_j (i != j), normalized so that the
    expected number of substitutions per unit branch length is one.

    Attributes:
        name: Model name
        alphabet: One character per state
        frequencies: Stationary state frequencies
    """

    def __init__(
        self,
        exchangeabilities: np.ndarray,
        frequencies: Sequence[float],
        alphabet: str = DNA,
        name: str = "custom"
    ):
        exchangeabilities = np.asarray(exchangeabilities, dtype=float)
        frequencies = np.asarray(frequencies, dtype=float)
        n = len(alphabet)

        if exchangeabilities.shape != (n, n):
            raise ValueError(
                f"Exchangeabilities must be {n}x{n} for alphabet {alphabet!r}"
            )
        if not np.allclose(exchangeabilities, exchangeabilities.T):
            raise ValueError("Exchangeabilities must be symmetric")
        if frequencies.shape != (n,) or np.any(frequencies <= 0):
            raise ValueError("Frequencies must be positive, one per state")

        self.name = name
        self.alphabet = alphabet
        self.frequencies = frequencies / frequencies.sum()

        q = exchangeabilities * self.frequencies[None, :]
        np.fill_diagonal(q, 0.0)
        np.fill_diagonal(q, -q.sum(axis=1))
        q /= -np.dot(self.frequencies, np.diag(q))
        self.rate_matrix = q

        # Symmetrize: D Q D^-1 with D = diag(sqrt(pi))
        root_pi = np.sqrt(self.frequencies)
        symmetric = root_pi[:, None] * q / root_pi[None, :]
        eigenvalues, u = np.linalg.eigh((symmetric + symmetric.T) / 2)

        self._eigenvalues = eigenvalues
        self._eigenvectors = u / root_pi[:, None]
        self._inverse_eigenvectors = u.T * root_pi[None, :]

    @property
    def n_states(self) -> int:
        return len(self.alphabet)

    def eigen_decomposition(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Return (eigenvectors, inverse eigenvectors, eigenvalues) such that
        Q = U diag(lambda) U^-1.
        """
        return (
            self._eigenvectors.copy(),
            self._inverse_eigenvectors.copy(),
            self._eigenvalues.copy()
        )

    def transition_matrix(self, t: float) -> np.ndarray:
        """P(t) = exp(Q t); rows index the starting state."""
        p = (self._eigenvectors * np.exp(self._eigenvalues * t)) @ self._inverse_eigenvectors
        return np.clip(p, 0.0, None)

    def __repr__(self) -> str:
        return f"SubstitutionModel(name={self.name!r}, n_states={self.n_states})"


def jukes_cantor(alphabet: str = DNA) -> SubstitutionModel:
    """Equal exchangeabilities and equal frequencies."""
    n = len(alphabet)
    return SubstitutionModel(
        np.ones((n, n)) - np.eye(n),
        np.full(n, 1.0 / n),
        alphabet=alphabet,
        name="JC69"
    )


def hky85(kappa: float, frequencies: Sequence[float]) -> SubstitutionModel:
    """
    Hasegawa-Kishino-Yano model on ACGT.

    Args:
        kappa: Transition/transversion rate ratio
        frequencies: Frequencies of A, C, G, T
    """
    if kappa <= 0:
        raise ValueError(f"kappa must be positive, got {kappa}")
    s = np.ones((4, 4)) - np.eye(4)
    # A<->G and C<->T are transitions
    s[0, 2] = s[2, 0] = kappa
    s[1, 3] = s[3, 1] = kappa
    return SubstitutionModel(s, frequencies, name="HKY85")


def gtr(rates: Sequence[float], frequencies: Sequence[float]) -> SubstitutionModel:
    """
    General time-reversible model on ACGT.

    Args:
        rates: Exchangeabilities in the order AC, AG, AT, CG, CT, GT
        frequencies: Frequencies of A, C, G, T
    """
    rates = np.asarray(rates, dtype=float)
    if rates.shape != (6,) or np.any(rates <= 0):
        raise ValueError("GTR needs six positive exchangeabilities")
    s = np.zeros((4, 4))
    s[np.triu_indices(4, k=1)] = rates
    s = s + s.T
    return SubstitutionModel(s, frequencies, name="GTR")


class RateDistribution:
    """
    Discrete distribution of among-site rate multipliers.

    Attributes:
        rates: Rate multiplier of each category
        weights: Probability of each category
    """

    def __init__(self, rates: Sequence[float], weights: Optional[Sequence[float]] = None):
        self.rates = np.asarray(rates, dtype=float)
        if self.rates.ndim != 1 or len(self.rates) == 0:
            raise ValueError("At least one rate category is required")
        if weights is None:
            weights = np.full(len(self.rates), 1.0 / len(self.rates))
        self.weights = np.asarray(weights, dtype=float)

        if self.weights.shape != self.rates.shape:
            raise ValueError("Need exactly one weight per rate category")
        if np.any(self.rates < 0) or np.any(self.weights < 0):
            raise ValueError("Rates and weights must be non-negative")
        if not np.isclose(self.weights.sum(), 1.0):
            raise ValueError(f"Category weights sum to {self.weights.sum()}, not 1")

    @property
    def n_categories(self) -> int:
        return len(self.rates)

    def __repr__(self) -> str:
        return f"RateDistribution(rates={self.rates.tolist()})"


def constant_rates() -> RateDistribution:
    """A single category with rate 1."""
    return RateDistribution([1.0], [1.0])


def gamma_rates(n_categories: int, alpha: float) -> RateDistribution:
    """
    Discretized gamma rate heterogeneity (mean of each equal-mass bin).

    Args:
        n_categories: Number of categories
        alpha: Gamma shape parameter; the distribution has mean 1
    """
    if n_categories < 1:
        raise ValueError("n_categories must be at least 1")
    if alpha <= 0:
        raise ValueError(f"alpha must be positive, got {alpha}")

    cuts = stats.gamma.ppf(np.arange(n_categories + 1) / n_categories, a=alpha, scale=1.0 / alpha)
    mass = special.gammainc(alpha + 1, cuts * alpha)
    rates = n_categories * np.diff(mass)
    return RateDistribution(rates, np.full(n_categories, 1.0 / n_categories))
