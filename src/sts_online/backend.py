"""
Numerical backend for partial likelihood computations.

The backend owns a fixed pool of partial likelihood buffers, transition
matrices and per-buffer scale factors, and knows nothing about trees.
Callers describe work as batches of operations, each combining two source
buffers through two transition matrices into a destination buffer, in the
manner of the BEAGLE library.

Every call reports its outcome as a ReturnCode rather than raising;
calculations return a (code, value) pair. Callers are expected to check
the code immediately.
"""

import enum
import numpy as np
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence, Tuple


class ReturnCode(enum.IntEnum):
    """Status codes reported by the backend."""

    SUCCESS = 0
    ERROR_GENERAL = -1
    ERROR_OUT_OF_MEMORY = -2
    ERROR_UNIDENTIFIED_EXCEPTION = -3
    ERROR_UNINITIALIZED_INSTANCE = -4
    ERROR_OUT_OF_RANGE = -5
    ERROR_NO_RESOURCE = -6
    ERROR_NO_IMPLEMENTATION = -7
    ERROR_FLOATING_POINT = -8


class Operation(NamedTuple):
    """
    Combine two source partials into a destination partial.

    destination = (P[matrix1] . source1) * (P[matrix2] . source2)
    """

    destination: int
    source1: int
    matrix1: int
    source2: int
    matrix2: int


@dataclass
class BackendMetrics:
    """Counters of backend work, read by the caller after each step."""

    transition_matrix_updates: int = 0
    """Number of update_transition_matrices calls"""

    transition_matrices_computed: int = 0
    """Total number of transition matrices computed"""

    partials_updates: int = 0
    """Number of update_partials calls"""

    partials_operations: int = 0
    """Total number of partial combination operations performed"""

    root_evaluations: int = 0
    """Number of root log-likelihood evaluations"""

    edge_evaluations: int = 0
    """Number of edge log-likelihood evaluations"""

    def reset(self):
        """Zero every counter."""
        self.transition_matrix_updates = 0
        self.transition_matrices_computed = 0
        self.partials_updates = 0
        self.partials_operations = 0
        self.root_evaluations = 0
        self.edge_evaluations = 0


class LikelihoodBackend:
    """
    Buffer-based partial likelihood calculator backed by numpy.

    Partials are stored as an array of shape
    (n_buffers, n_rates, n_sites, n_states). Each buffer has a matching
    scale buffer holding the accumulated per-site log scale factors of the
    partial it contains.
    """

    def __init__(
        self,
        n_buffers: int,
        n_states: int,
        n_sites: int,
        n_rates: int,
        n_matrices: Optional[int] = None,
        n_eigen: int = 1,
        n_frequencies: int = 1,
        n_category_weights: int = 1,
        scaling: bool = True,
        metrics: Optional[BackendMetrics] = None
    ):
        """
        Allocate a backend instance.

        Args:
            n_buffers: Number of partial buffers
            n_states: Number of states of the substitution process
            n_sites: Number of alignment sites
            n_rates: Number of rate categories
            n_matrices: Number of transition matrix slots (default n_buffers)
            n_eigen: Number of eigendecomposition slots
            n_frequencies: Number of state frequency slots
            n_category_weights: Number of category weight slots
            scaling: Rescale partials to avoid underflow
            metrics: Counters to update (default: a private instance)
        """
        if min(n_buffers, n_states, n_sites, n_rates) < 1:
            raise ValueError("Backend dimensions must be positive")

        self.n_buffers = n_buffers
        self.n_states = n_states
        self.n_sites = n_sites
        self.n_rates = n_rates
        self.n_matrices = n_buffers if n_matrices is None else n_matrices
        self.scaling = scaling
        self.metrics = metrics if metrics is not None else BackendMetrics()

        self._partials = np.zeros((n_buffers, n_rates, n_sites, n_states))
        self._scale = np.zeros((n_buffers, n_sites))
        self._partials_set = np.zeros(n_buffers, dtype=bool)
        self._matrices = np.zeros((self.n_matrices, n_rates, n_states, n_states))

        self._eigen: List[Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]]] = [None] * n_eigen
        self._frequencies: List[Optional[np.ndarray]] = [None] * n_frequencies
        self._category_weights: List[Optional[np.ndarray]] = [None] * n_category_weights
        self._category_rates: Optional[np.ndarray] = None
        self._pattern_weights = np.ones(n_sites)

    # Configuration

    def set_partials(self, index: int, partials: np.ndarray) -> ReturnCode:
        """Copy a (n_rates, n_sites, n_states) array into a buffer."""
        if not 0 <= index < self.n_buffers:
            return ReturnCode.ERROR_OUT_OF_RANGE
        partials = np.asarray(partials, dtype=float)
        if partials.size != self._partials[index].size:
            return ReturnCode.ERROR_OUT_OF_RANGE
        self._partials[index] = partials.reshape(self._partials[index].shape)
        self._scale[index] = 0.0
        self._partials_set[index] = True
        return ReturnCode.SUCCESS

    def get_partials(self, index: int) -> Tuple[ReturnCode, Optional[np.ndarray], Optional[np.ndarray]]:
        """Return (code, partials copy, log scale copy) for a buffer."""
        if not 0 <= index < self.n_buffers:
            return ReturnCode.ERROR_OUT_OF_RANGE, None, None
        if not self._partials_set[index]:
            return ReturnCode.ERROR_UNINITIALIZED_INSTANCE, None, None
        return ReturnCode.SUCCESS, self._partials[index].copy(), self._scale[index].copy()

    def set_eigen_decomposition(
        self,
        index: int,
        eigenvectors: np.ndarray,
        inverse_eigenvectors: np.ndarray,
        eigenvalues: np.ndarray
    ) -> ReturnCode:
        """Store an eigendecomposition Q = U diag(lambda) U^-1."""
        if not 0 <= index < len(self._eigen):
            return ReturnCode.ERROR_OUT_OF_RANGE
        evec = np.asarray(eigenvectors, dtype=float)
        ivec = np.asarray(inverse_eigenvectors, dtype=float)
        evals = np.asarray(eigenvalues, dtype=float)
        square = (self.n_states, self.n_states)
        if evec.shape != square or ivec.shape != square or evals.shape != (self.n_states,):
            return ReturnCode.ERROR_OUT_OF_RANGE
        self._eigen[index] = (evec.copy(), ivec.copy(), evals.copy())
        return ReturnCode.SUCCESS

    def set_state_frequencies(self, index: int, frequencies: Sequence[float]) -> ReturnCode:
        if not 0 <= index < len(self._frequencies):
            return ReturnCode.ERROR_OUT_OF_RANGE
        frequencies = np.asarray(frequencies, dtype=float)
        if frequencies.shape != (self.n_states,):
            return ReturnCode.ERROR_OUT_OF_RANGE
        self._frequencies[index] = frequencies.copy()
        return ReturnCode.SUCCESS

    def set_category_rates(self, rates: Sequence[float]) -> ReturnCode:
        rates = np.asarray(rates, dtype=float)
        if rates.shape != (self.n_rates,):
            return ReturnCode.ERROR_OUT_OF_RANGE
        if np.any(rates < 0) or not np.all(np.isfinite(rates)):
            return ReturnCode.ERROR_OUT_OF_RANGE
        self._category_rates = rates.copy()
        return ReturnCode.SUCCESS

    def set_category_weights(self, index: int, weights: Sequence[float]) -> ReturnCode:
        if not 0 <= index < len(self._category_weights):
            return ReturnCode.ERROR_OUT_OF_RANGE
        weights = np.asarray(weights, dtype=float)
        if weights.shape != (self.n_rates,):
            return ReturnCode.ERROR_OUT_OF_RANGE
        self._category_weights[index] = weights.copy()
        return ReturnCode.SUCCESS

    def set_pattern_weights(self, weights: Sequence[float]) -> ReturnCode:
        weights = np.asarray(weights, dtype=float)
        if weights.shape != (self.n_sites,):
            return ReturnCode.ERROR_OUT_OF_RANGE
        self._pattern_weights = weights.copy()
        return ReturnCode.SUCCESS

    # Computation

    def update_transition_matrices(
        self,
        eigen_index: int,
        matrix_indices: Sequence[int],
        edge_lengths: Sequence[float]
    ) -> ReturnCode:
        """
        Compute P(rate * t) = U diag(exp(lambda * rate * t)) U^-1 for each
        (matrix index, edge length) pair and every rate category.
        """
        if not 0 <= eigen_index < len(self._eigen):
            return ReturnCode.ERROR_OUT_OF_RANGE
        if self._eigen[eigen_index] is None or self._category_rates is None:
            return ReturnCode.ERROR_UNINITIALIZED_INSTANCE
        if len(matrix_indices) != len(edge_lengths):
            return ReturnCode.ERROR_OUT_OF_RANGE

        indices = np.asarray(matrix_indices, dtype=int)
        lengths = np.asarray(edge_lengths, dtype=float)
        if indices.size == 0:
            return ReturnCode.SUCCESS
        if np.any(indices < 0) or np.any(indices >= self.n_matrices):
            return ReturnCode.ERROR_OUT_OF_RANGE
        if np.any(lengths < 0) or not np.all(np.isfinite(lengths)):
            return ReturnCode.ERROR_OUT_OF_RANGE

        evec, ivec, evals = self._eigen[eigen_index]
        # (n_matrices, n_rates, n_states)
        exponent = np.exp(
            lengths[:, None, None] * self._category_rates[None, :, None] * evals[None, None, :]
        )
        matrices = np.einsum("ij,mrj,jk->mrik", evec, exponent, ivec)
        # Round-off can leave tiny negative entries
        np.clip(matrices, 0.0, None, out=matrices)
        self._matrices[indices] = matrices

        self.metrics.transition_matrix_updates += 1
        self.metrics.transition_matrices_computed += indices.size
        return ReturnCode.SUCCESS

    def get_transition_matrix(self, index: int) -> Tuple[ReturnCode, Optional[np.ndarray]]:
        """Return (code, matrices of shape (n_rates, n_states, n_states))."""
        if not 0 <= index < self.n_matrices:
            return ReturnCode.ERROR_OUT_OF_RANGE, None
        return ReturnCode.SUCCESS, self._matrices[index].copy()

    def update_partials(self, operations: Sequence[Operation]) -> ReturnCode:
        """
        Execute a batch of operations in order.

        Later operations may read destinations written by earlier ones.
        """
        for op in operations:
            buffers = (op.destination, op.source1, op.source2)
            if any(not 0 <= b < self.n_buffers for b in buffers):
                return ReturnCode.ERROR_OUT_OF_RANGE
            if any(not 0 <= m < self.n_matrices for m in (op.matrix1, op.matrix2)):
                return ReturnCode.ERROR_OUT_OF_RANGE
            if not (self._partials_set[op.source1] and self._partials_set[op.source2]):
                return ReturnCode.ERROR_UNINITIALIZED_INSTANCE
            if op.destination in (op.source1, op.source2):
                return ReturnCode.ERROR_GENERAL

            left = np.einsum("rij,rsj->rsi", self._matrices[op.matrix1], self._partials[op.source1])
            right = np.einsum("rij,rsj->rsi", self._matrices[op.matrix2], self._partials[op.source2])
            partials = left * right
            scale = self._scale[op.source1] + self._scale[op.source2]

            if self.scaling:
                factors = partials.max(axis=(0, 2))
                positive = factors > 0
                factors[~positive] = 1.0
                partials /= factors[None, :, None]
                scale = scale + np.log(factors)

            if not np.all(np.isfinite(partials)):
                return ReturnCode.ERROR_FLOATING_POINT

            self._partials[op.destination] = partials
            self._scale[op.destination] = scale
            self._partials_set[op.destination] = True

        self.metrics.partials_updates += 1
        self.metrics.partials_operations += len(operations)
        return ReturnCode.SUCCESS

    def _site_log_likelihoods(self, partials, scale, weights_index, frequencies_index):
        weights = self._category_weights[weights_index]
        frequencies = self._frequencies[frequencies_index]
        site_likelihoods = np.einsum("r,rsk,k->s", weights, partials, frequencies)
        with np.errstate(divide="ignore"):
            return np.log(np.maximum(site_likelihoods, 0.0)) + scale

    def _check_weights(self, weights_index: int, frequencies_index: int) -> ReturnCode:
        if not 0 <= weights_index < len(self._category_weights):
            return ReturnCode.ERROR_OUT_OF_RANGE
        if not 0 <= frequencies_index < len(self._frequencies):
            return ReturnCode.ERROR_OUT_OF_RANGE
        if self._category_weights[weights_index] is None or self._frequencies[frequencies_index] is None:
            return ReturnCode.ERROR_UNINITIALIZED_INSTANCE
        return ReturnCode.SUCCESS

    def _total(self, site_log_likelihoods) -> Tuple[ReturnCode, float]:
        weighted = self._pattern_weights * site_log_likelihoods
        if np.any(np.isnan(weighted)):
            return ReturnCode.ERROR_FLOATING_POINT, float("nan")
        return ReturnCode.SUCCESS, float(np.sum(weighted))

    def calculate_root_log_likelihood(
        self,
        buffer_index: int,
        weights_index: int = 0,
        frequencies_index: int = 0,
        scale_index: Optional[int] = None
    ) -> Tuple[ReturnCode, float]:
        """
        Log-likelihood at a root partial:

            sum_sites w_site * (log sum_r w_r sum_k pi_k L[r, site, k] + scale[site])

        Args:
            buffer_index: Root partial buffer
            weights_index: Category weight slot
            frequencies_index: State frequency slot
            scale_index: Scale buffer to add (default: that of the root buffer)
        """
        if not 0 <= buffer_index < self.n_buffers:
            return ReturnCode.ERROR_OUT_OF_RANGE, float("nan")
        scale_index = buffer_index if scale_index is None else scale_index
        if not 0 <= scale_index < self.n_buffers:
            return ReturnCode.ERROR_OUT_OF_RANGE, float("nan")
        code = self._check_weights(weights_index, frequencies_index)
        if code != ReturnCode.SUCCESS:
            return code, float("nan")
        if not self._partials_set[buffer_index]:
            return ReturnCode.ERROR_UNINITIALIZED_INSTANCE, float("nan")

        site_ll = self._site_log_likelihoods(
            self._partials[buffer_index], self._scale[scale_index],
            weights_index, frequencies_index
        )
        self.metrics.root_evaluations += 1
        return self._total(site_ll)

    def calculate_edge_log_likelihood(
        self,
        parent_index: int,
        child_index: int,
        matrix_index: int,
        weights_index: int = 0,
        frequencies_index: int = 0
    ) -> Tuple[ReturnCode, float]:
        """
        Log-likelihood across an edge joining a parent-side partial to a
        child partial through transition matrix `matrix_index`.
        """
        if any(not 0 <= b < self.n_buffers for b in (parent_index, child_index)):
            return ReturnCode.ERROR_OUT_OF_RANGE, float("nan")
        if not 0 <= matrix_index < self.n_matrices:
            return ReturnCode.ERROR_OUT_OF_RANGE, float("nan")
        code = self._check_weights(weights_index, frequencies_index)
        if code != ReturnCode.SUCCESS:
            return code, float("nan")
        if not (self._partials_set[parent_index] and self._partials_set[child_index]):
            return ReturnCode.ERROR_UNINITIALIZED_INSTANCE, float("nan")

        child = np.einsum("rij,rsj->rsi", self._matrices[matrix_index], self._partials[child_index])
        site_ll = self._site_log_likelihoods(
            self._partials[parent_index] * child,
            self._scale[parent_index] + self._scale[child_index],
            weights_index, frequencies_index
        )
        self.metrics.edge_evaluations += 1
        return self._total(site_ll)
