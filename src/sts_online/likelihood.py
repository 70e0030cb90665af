"""
Incremental tree likelihood calculation using Felsenstein's pruning.

PartialLikelihoodEngine drives a LikelihoodBackend. It keeps one backend
buffer per leaf (fixed at construction), one buffer per internal node for
its distal partial (looking down into the subtree) and one buffer per
child of each non-root internal node for the proximal partial (looking up
toward the rest of the tree): 4 * n_leaves - 2 buffers in total.

Every cached partial remembers the state it was computed from: the write
versions of its two source buffers and the two branch lengths used. A
partial is only recomputed when that state changes, so after a single
branch length edit only the distal partials on the path to the root and
the proximal partials below the edit are redone.
"""

import itertools
import logging
import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple

from .alignment import leaf_partials
from .backend import BackendMetrics, LikelihoodBackend, Operation, ReturnCode
from .errors import BackendError, ConfigurationError
from .likelihood_vector import LikelihoodVector
from .models import RateDistribution, SubstitutionModel
from .tree import Tree

logger = logging.getLogger(__name__)

# (destination, source1, length1, source2, length2)
PendingOperation = Tuple[int, int, float, int, float]


def beagle_check(code: ReturnCode, context: str = ""):
    """Raise BackendError unless the backend reported success."""
    if code != ReturnCode.SUCCESS:
        raise BackendError(code, context)


class PartialLikelihoodEngine:
    """
    Calculates and caches partial likelihood vectors for one tree at a time.

    Leaves are registered once from the alignment; trees passed to the
    engine may contain any subset of them. One engine serves one tree at a
    time and does no locking.
    """

    EIGEN_INDEX = 0
    WEIGHTS_INDEX = 0
    FREQUENCIES_INDEX = 0

    def __init__(
        self,
        alignment,
        model: SubstitutionModel,
        rate_distribution: RateDistribution,
        scaling: bool = True,
        metrics: Optional[BackendMetrics] = None
    ):
        """
        Allocate backend buffers and register every sequence as a leaf.

        Args:
            alignment: Alignment, or any mapping / iterable of (name, sequence)
            model: Default substitution model; only its state alphabet is
                used here. Call load_substitution_model before evaluating.
            rate_distribution: Default rate distribution; only its category
                count is used here. Call load_rate_distribution before
                evaluating.
            scaling: Rescale partials to avoid underflow
            metrics: Counters shared with the caller (default: new instance)
        """
        items = list(alignment.items())
        if len(items) < 2:
            raise ConfigurationError("At least two sequences are required")

        lengths = {len(sequence) for _, sequence in items}
        if len(lengths) != 1:
            raise ValueError(f"Sequences have differing lengths: {sorted(lengths)}")

        self.n_leaves = len(items)
        self.n_sites = lengths.pop()
        self.n_states = model.n_states
        self.n_rates = rate_distribution.n_categories
        # One per leaf, one distal per internal node, two proximal per internal node
        self.n_buffers = 4 * self.n_leaves - 2

        # Matrix slots: [0, 2 * n_buffers) for batched operations,
        # then one matrix owned by each buffer, then one scratch matrix.
        self._owned_matrix_offset = 2 * self.n_buffers
        self._scratch_matrix = 3 * self.n_buffers

        self.metrics = metrics if metrics is not None else BackendMetrics()
        self.backend = LikelihoodBackend(
            n_buffers=self.n_buffers,
            n_states=self.n_states,
            n_sites=self.n_sites,
            n_rates=self.n_rates,
            n_matrices=3 * self.n_buffers + 1,
            scaling=scaling,
            metrics=self.metrics
        )

        self._versions = itertools.count(1)
        self._version = [0] * self.n_buffers

        self._leaf_buffer: Dict[str, int] = {}
        for name, sequence in items:
            self._register_leaf(name, sequence, model)
        beagle_check(self.backend.set_pattern_weights(np.ones(self.n_sites)), "pattern weights")

        # Pop from the end: lowest free index first
        self._free: List[int] = list(range(self.n_buffers - 1, self.n_leaves - 1, -1))

        self._distal: Dict[int, int] = {}
        self._distal_state: Dict[int, tuple] = {}
        self._proximal: Dict[int, int] = {}
        self._proximal_state: Dict[int, tuple] = {}
        self._mid_edge: Dict[int, Tuple[tuple, LikelihoodVector]] = {}

        self._model_key: Optional[tuple] = None
        self._rates_key: Optional[tuple] = None
        self._frequencies: Optional[np.ndarray] = None
        self._rate_weights: Optional[np.ndarray] = None

        self.tree: Optional[Tree] = None

    def _register_leaf(self, name: str, sequence: str, model: SubstitutionModel) -> int:
        if name in self._leaf_buffer:
            raise ConfigurationError(f"Duplicate sequence name: {name}")
        buffer = len(self._leaf_buffer)
        beagle_check(
            self.backend.set_partials(buffer, leaf_partials(sequence, model, self.n_rates)),
            f"leaf {name}"
        )
        self._leaf_buffer[name] = buffer
        self._version[buffer] = next(self._versions)
        return buffer

    # Model and rates

    def load_substitution_model(self, model: SubstitutionModel):
        """Push the model's eigendecomposition and frequencies to the backend."""
        if model.n_states != self.n_states:
            raise ConfigurationError(
                f"Model has {model.n_states} states, engine was built for {self.n_states}"
            )
        evec, ivec, evals = model.eigen_decomposition()
        frequencies = np.asarray(model.frequencies, dtype=float)

        beagle_check(
            self.backend.set_eigen_decomposition(self.EIGEN_INDEX, evec, ivec, evals),
            "eigendecomposition"
        )
        beagle_check(
            self.backend.set_state_frequencies(self.FREQUENCIES_INDEX, frequencies),
            "state frequencies"
        )

        key = (evec.tobytes(), ivec.tobytes(), evals.tobytes(), frequencies.tobytes())
        if key != self._model_key:
            if self._model_key is not None:
                self._clear_cache()
            self._model_key = key
        self._frequencies = frequencies

    def load_rate_distribution(self, rate_distribution: RateDistribution):
        """Push category rates and weights to the backend."""
        if rate_distribution.n_categories != self.n_rates:
            raise ConfigurationError(
                f"Rate distribution has {rate_distribution.n_categories} categories, "
                f"engine was built for {self.n_rates}"
            )
        rates = np.asarray(rate_distribution.rates, dtype=float)
        weights = np.asarray(rate_distribution.weights, dtype=float)

        beagle_check(self.backend.set_category_rates(rates), "category rates")
        beagle_check(self.backend.set_category_weights(self.WEIGHTS_INDEX, weights), "category weights")

        key = (rates.tobytes(), weights.tobytes())
        if key != self._rates_key:
            if self._rates_key is not None:
                self._clear_cache()
            self._rates_key = key
        self._rate_weights = weights

    def _verify_initialized(self):
        if self._model_key is None:
            raise ConfigurationError("Substitution model not loaded")
        if self._rates_key is None:
            raise ConfigurationError("Rate distribution not loaded")

    # Buffer management

    def free_buffer_count(self) -> int:
        return len(self._free)

    def _acquire(self) -> int:
        if not self._free:
            raise ConfigurationError("No free likelihood buffers")
        return self._free.pop()

    def _release(self, buffer: int):
        self._free.append(buffer)

    def _owned_matrix(self, buffer: int) -> int:
        return self._owned_matrix_offset + buffer

    def _clear_cache(self):
        for buffer in itertools.chain(self._distal.values(), self._proximal.values()):
            self._release(buffer)
        self._distal.clear()
        self._distal_state.clear()
        self._proximal.clear()
        self._proximal_state.clear()
        self._mid_edge.clear()

    def leaf_buffer(self, name: str) -> int:
        try:
            return self._leaf_buffer[name]
        except KeyError:
            raise ConfigurationError(f"Unknown leaf: {name}") from None

    def _slot(self, tree: Tree, u: int) -> int:
        """Buffer holding the distal partial of node u."""
        if tree.is_leaf(u):
            return self._leaf_buffer[tree.name(u)]
        return self._distal[u]

    # Tree loading and traversal

    def load_tree(self, tree: Tree):
        """
        Make `tree` the current tree.

        Cached partials for nodes that no longer exist, or that changed
        between leaf and internal, are released; everything else is checked
        against its recorded state on the next evaluation.
        """
        if tree.is_leaf(tree.root):
            raise ValueError("Tree must contain at least two leaves")
        for name in tree.leaf_names:
            if name not in self._leaf_buffer:
                raise ConfigurationError(f"Tree leaf {name} has no registered sequence")

        self.tree = tree
        nodes = set(tree.nodes())

        for u in list(self._distal):
            if u not in nodes or tree.is_leaf(u):
                self._release(self._distal.pop(u))
                self._distal_state.pop(u, None)

        for u in list(self._proximal):
            keep = u in nodes and u != tree.root and tree.parent(u) != tree.root
            if not keep:
                self._release(self._proximal.pop(u))
                self._proximal_state.pop(u, None)

        edges = set(tree.edges())
        for u in list(self._mid_edge):
            if u not in edges:
                del self._mid_edge[u]

    def _require_tree(self) -> Tree:
        if self.tree is None:
            raise ConfigurationError("No tree loaded")
        return self.tree

    def invalidate(self, node: int):
        """Force recomputation of the partials cached for `node`."""
        self._distal_state.pop(node, None)
        self._proximal_state.pop(node, None)
        self._mid_edge.pop(node, None)

    def _submit(self, operations: Sequence[PendingOperation]):
        """Compute transition matrices and partials for a batch, in order."""
        if not operations:
            return
        matrix_indices: List[int] = []
        lengths: List[float] = []
        batch: List[Operation] = []
        for i, (destination, source1, length1, source2, length2) in enumerate(operations):
            m1, m2 = 2 * i, 2 * i + 1
            matrix_indices.extend((m1, m2))
            lengths.extend((length1, length2))
            batch.append(Operation(destination, source1, m1, source2, m2))

        try:
            beagle_check(
                self.backend.update_transition_matrices(self.EIGEN_INDEX, matrix_indices, lengths),
                "transition matrices"
            )
            beagle_check(self.backend.update_partials(batch), "partials")
        except BackendError:
            # Recorded states no longer describe buffer contents
            self._clear_cache()
            raise

    def _queue(self, cache: Dict[int, int], states: Dict[int, tuple], u: int, state: tuple,
               operations: List[PendingOperation], sources: Tuple[int, float, int, float]) -> bool:
        if u in cache and states.get(u) == state:
            return False
        buffer = cache.get(u)
        if buffer is None:
            buffer = self._acquire()
            cache[u] = buffer
        states[u] = state
        self._version[buffer] = next(self._versions)
        operations.append((buffer,) + sources)
        return True

    def _calculate_distal_partials(self, tree: Tree) -> int:
        """Postorder pass; returns the number of partials recomputed."""
        operations: List[PendingOperation] = []
        for u in tree.nodes(order="postorder"):
            if tree.is_leaf(u):
                continue
            a, b = tree.children(u)
            sa, sb = self._slot(tree, a), self._slot(tree, b)
            la, lb = tree.branch_length(a), tree.branch_length(b)
            state = (self._version[sa], la, self._version[sb], lb)
            self._queue(self._distal, self._distal_state, u, state, operations, (sa, la, sb, lb))

        self._submit(operations)
        return len(operations)

    def _calculate_proximal_partials(self, tree: Tree) -> int:
        """Preorder pass over children of non-root internal nodes."""
        root = tree.root
        operations: List[PendingOperation] = []
        for n in tree.nodes(order="preorder"):
            if n == root or tree.is_leaf(n):
                continue

            if tree.parent(n) == root:
                # Drop the root: join the two root edges and look down the sibling
                sibling = tree.sibling(n)
                above = self._slot(tree, sibling)
                above_length = tree.branch_length(n) + tree.branch_length(sibling)
            else:
                above = self._proximal[n]
                above_length = tree.branch_length(n)

            a, b = tree.children(n)
            for son, other in ((a, b), (b, a)):
                so = self._slot(tree, other)
                lo = tree.branch_length(other)
                state = (self._version[above], above_length, self._version[so], lo)
                self._queue(self._proximal, self._proximal_state, son, state, operations,
                            (above, above_length, so, lo))

        self._submit(operations)
        return len(operations)

    def _update(self) -> Tree:
        self._verify_initialized()
        tree = self._require_tree()
        n_distal = self._calculate_distal_partials(tree)
        n_proximal = self._calculate_proximal_partials(tree)
        logger.debug(
            "Recomputed %d distal and %d proximal partials (%d buffers free)",
            n_distal, n_proximal, self.free_buffer_count()
        )
        return tree

    # Evaluation

    def calculate_log_likelihood(self, tree: Optional[Tree] = None) -> float:
        """
        Log-likelihood of a tree.

        Args:
            tree: Tree to evaluate (default: the currently loaded tree)

        Returns:
            Log-likelihood under the loaded model and rate distribution
        """
        if tree is not None:
            self.load_tree(tree)
        tree = self._update()
        code, log_likelihood = self.backend.calculate_root_log_likelihood(
            self._distal[tree.root], self.WEIGHTS_INDEX, self.FREQUENCIES_INDEX
        )
        beagle_check(code, "root log-likelihood")
        return log_likelihood

    def _read(self, buffer: int) -> LikelihoodVector:
        code, values, scale = self.backend.get_partials(buffer)
        beagle_check(code, f"read buffer {buffer}")
        return LikelihoodVector(self.n_rates, self.n_sites, self.n_states, values, scale)

    def get_leaf_partials(self, name: str) -> LikelihoodVector:
        return self._read(self.leaf_buffer(name))

    def get_distal_partials(self, node: int) -> LikelihoodVector:
        tree = self._update()
        return self._read(self._slot(tree, node))

    def _above(self, tree: Tree, edge: int) -> Tuple[int, float]:
        """Buffer looking up from the top of `edge` and its extra distance."""
        if tree.parent(edge) == tree.root:
            sibling = tree.sibling(edge)
            return self._slot(tree, sibling), tree.branch_length(sibling)
        return self._proximal[edge], 0.0

    def get_mid_edge_partials(self) -> List[Tuple[int, LikelihoodVector]]:
        """
        Partial likelihood vector at the midpoint of every edge.

        Returns:
            List of (node below the edge, partials), edges in preorder
        """
        tree = self._update()
        result: Dict[int, Optional[LikelihoodVector]] = {}
        pending = []
        for edge in tree.edges():
            half = tree.branch_length(edge) / 2
            below = self._slot(tree, edge)
            above, offset = self._above(tree, edge)
            state = (self._version[above], offset + half, self._version[below], half)
            cached = self._mid_edge.get(edge)
            if cached is not None and cached[0] == state:
                result[edge] = cached[1]
            else:
                result[edge] = None
                pending.append((edge, state, (above, offset + half, below, half)))

        logger.debug("Mid-edge partials: %d cached, %d to compute",
                     len(result) - len(pending), len(pending))

        while pending:
            n = min(len(pending), self.free_buffer_count())
            if n == 0:
                raise ConfigurationError("No free likelihood buffers for mid-edge partials")
            chunk, pending = pending[:n], pending[n:]
            scratch = [self._acquire() for _ in chunk]
            try:
                self._submit([(s,) + sources for s, (_, _, sources) in zip(scratch, chunk)])
                for s, (edge, state, _) in zip(scratch, chunk):
                    vector = self._read(s)
                    self._mid_edge[edge] = (state, vector)
                    result[edge] = vector
            finally:
                for s in scratch:
                    self._release(s)

        return list(result.items())

    def log_dot(self, partials: LikelihoodVector, leaf_name: str, pendant_length: float) -> float:
        """
        Log-likelihood of joining a leaf to a point with known partials
        through a pendant branch.
        """
        self._verify_initialized()
        leaf = self.get_leaf_partials(leaf_name)

        beagle_check(
            self.backend.update_transition_matrices(
                self.EIGEN_INDEX, [self._scratch_matrix], [pendant_length]
            ),
            "pendant matrix"
        )
        code, matrices = self.backend.get_transition_matrix(self._scratch_matrix)
        beagle_check(code, "pendant matrix")

        propagated = LikelihoodVector(
            self.n_rates, self.n_sites, self.n_states,
            np.einsum("rij,rsj->rsi", matrices, leaf.values),
            leaf.log_scale
        )
        weighted = LikelihoodVector(
            self.n_rates, self.n_sites, self.n_states,
            partials.values * self._frequencies,
            partials.log_scale
        )
        return weighted.log_dot(propagated, self._rate_weights)

    def attachment_likelihood(self, edge: int, leaf_name: str) -> "AttachmentLikelihood":
        """Tripod evaluator for attaching `leaf_name` on the edge above `edge`."""
        return AttachmentLikelihood(self, edge, leaf_name)

    def calculate_attachment_likelihoods(
        self,
        leaf_name: str,
        locations: Sequence[Tuple[int, float]],
        pendant_lengths: Sequence[float]
    ) -> np.ndarray:
        """
        Attachment log-likelihoods over a grid.

        Args:
            leaf_name: Registered leaf to attach
            locations: (edge node, distal offset) pairs
            pendant_lengths: Pendant branch lengths to evaluate

        Returns:
            Array of shape (len(locations), len(pendant_lengths))
        """
        result = np.empty((len(locations), len(pendant_lengths)))
        for i, (edge, distal) in enumerate(locations):
            with self.attachment_likelihood(edge, leaf_name) as attachment:
                attachment.set_distal_length(distal)
                for j, pendant in enumerate(pendant_lengths):
                    result[i, j] = attachment(pendant)
        return result


class AttachmentLikelihood:
    """
    Log-likelihood of a new leaf attached part way along one edge.

    Holds two engine buffers for its lifetime: one for the partial at the
    attachment point (combining the partials below and above the edge), and
    one whose transition matrix carries the pendant branch. Release them
    with close(), or use the object as a context manager.
    """

    def __init__(self, engine: PartialLikelihoodEngine, edge: int, leaf_name: str):
        tree = engine._update()
        if edge == tree.root:
            raise ValueError("The root has no edge to attach to")

        self._engine = engine
        self.edge = edge
        self.leaf_name = leaf_name
        self.edge_length = tree.branch_length(edge)
        self._leaf = engine.leaf_buffer(leaf_name)

        self._below = engine._slot(tree, edge)
        self._above, self._above_offset = engine._above(tree, edge)
        self._sources = (engine._version[self._below], engine._version[self._above])

        if engine.free_buffer_count() < 2:
            raise ConfigurationError(
                f"Insufficient free likelihood buffers: {engine.free_buffer_count()}"
            )
        self._junction = engine._acquire()
        self._pendant = engine._acquire()
        self._pendant_matrix = engine._owned_matrix(self._pendant)
        self._distal: Optional[float] = None
        self._closed = False

    def _check_open(self):
        if self._closed:
            raise ConfigurationError("Attachment likelihood already closed")
        engine = self._engine
        if (engine._version[self._below], engine._version[self._above]) != self._sources:
            raise ConfigurationError("Engine partials changed while an attachment was in use")

    def set_distal_length(self, distal: float):
        """Move the attachment point to `distal` above the edge's lower node."""
        if not 0 <= distal <= self.edge_length:
            raise ValueError(f"Distal offset {distal} outside [0, {self.edge_length}]")
        self._check_open()
        if distal == self._distal:
            return
        proximal = self._above_offset + self.edge_length - distal
        self._engine._submit([(self._junction, self._below, distal, self._above, proximal)])
        self._distal = distal

    def __call__(self, pendant: float) -> float:
        """Log-likelihood with the current distal offset and `pendant`."""
        self._check_open()
        if self._distal is None:
            raise ConfigurationError("Distal length not set")
        engine = self._engine
        beagle_check(
            engine.backend.update_transition_matrices(
                engine.EIGEN_INDEX, [self._pendant_matrix], [pendant]
            ),
            "pendant matrix"
        )
        code, log_likelihood = engine.backend.calculate_edge_log_likelihood(
            self._junction, self._leaf, self._pendant_matrix,
            engine.WEIGHTS_INDEX, engine.FREQUENCIES_INDEX
        )
        beagle_check(code, "attachment log-likelihood")
        return log_likelihood

    def log_like(self, distal: float, pendant: float) -> float:
        self.set_distal_length(distal)
        return self(pendant)

    def close(self):
        if not self._closed:
            self._engine._release(self._junction)
            self._engine._release(self._pendant)
            self._closed = True

    def __enter__(self) -> "AttachmentLikelihood":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
