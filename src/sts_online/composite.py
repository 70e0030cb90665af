"""
Tree likelihood combined with additional log-likelihood terms.

A CompositeLikelihood wraps one PartialLikelihoodEngine and any number of
side-effect free functions of the current tree (priors, typically). It is
the likelihood an attachment move scores candidate edges with.
"""

import logging
import numpy as np
from collections import OrderedDict
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import ConfigurationError
from .likelihood import AttachmentLikelihood, PartialLikelihoodEngine
from .models import RateDistribution, SubstitutionModel
from .tree import Tree
from .tripod import AttachmentOptimizer

logger = logging.getLogger(__name__)

TreeLogLikelihood = Callable[[Tree], float]


class CompositeLikelihood:
    """
    Sum of the engine's tree log-likelihood and additional terms.

    Attributes:
        engine: The partial likelihood engine
        additional_log_likes: Extra terms, each called with the current tree
        tree: Tree set by the last call to initialize
    """

    def __init__(
        self,
        engine: PartialLikelihoodEngine,
        additional_log_likes: Sequence[TreeLogLikelihood] = ()
    ):
        self.engine = engine
        self.additional_log_likes: List[TreeLogLikelihood] = list(additional_log_likes)
        self.tree: Optional[Tree] = None

    def initialize(self, model: SubstitutionModel, rate_distribution: RateDistribution, tree: Tree):
        """Load a model, rate distribution and tree into the engine."""
        self.engine.load_substitution_model(model)
        self.engine.load_rate_distribution(rate_distribution)
        self.engine.load_tree(tree)
        self.tree = tree

    def add(self, log_like: TreeLogLikelihood):
        self.additional_log_likes.append(log_like)

    def _require_tree(self) -> Tree:
        if self.tree is None:
            raise ConfigurationError("Composite likelihood used before initialize()")
        return self.tree

    def _additional(self, tree: Tree) -> float:
        return sum(like(tree) for like in self.additional_log_likes)

    def __call__(self) -> float:
        tree = self._require_tree()
        return self.engine.calculate_log_likelihood() + self._additional(tree)

    def log_likelihood(self) -> float:
        return self()

    def edge_log_likelihoods(
        self,
        leaf_name: str,
        pendant_lengths: Sequence[float]
    ) -> "OrderedDict[int, float]":
        """
        Best attachment log-likelihood of a leaf on every edge.

        Each edge is scored at its midpoint for every pendant length and the
        maximum is kept.

        Args:
            leaf_name: Registered leaf not yet in the tree
            pendant_lengths: Candidate pendant branch lengths

        Returns:
            OrderedDict mapping the node below each edge (preorder) to its
            best log-likelihood
        """
        tree = self._require_tree()
        if len(pendant_lengths) == 0:
            raise ValueError("At least one pendant length is required")

        additional = self._additional(tree)
        result: "OrderedDict[int, float]" = OrderedDict()
        for node, partials in self.engine.get_mid_edge_partials():
            best = -np.inf
            for pendant in pendant_lengths:
                best = max(best, self.engine.log_dot(partials, leaf_name, pendant) + additional)
            result[node] = best

        logger.debug("Scored %d edges for %s", len(result), leaf_name)
        return result

    def create_optimizer(self, edge: int, leaf_name: str, max_pendant: Optional[float] = None) -> AttachmentOptimizer:
        """
        Tripod optimizer for attaching `leaf_name` on the edge above `edge`.

        Raises:
            ConfigurationError: fewer than two free engine buffers
        """
        tree = self._require_tree()
        free = self.engine.free_buffer_count()
        if free < 2:
            raise ConfigurationError(f"Insufficient free likelihood buffers: {free}")
        attachment = AttachmentLikelihood(self.engine, edge, leaf_name)
        return AttachmentOptimizer(
            attachment.log_like,
            tree.branch_length(edge),
            max_pendant=max_pendant,
            on_close=attachment.close
        )

    def calculate_attachment_likelihoods(
        self,
        leaf_name: str,
        locations: Sequence[Tuple[int, float]],
        pendant_lengths: Sequence[float]
    ) -> np.ndarray:
        self._require_tree()
        return self.engine.calculate_attachment_likelihoods(leaf_name, locations, pendant_lengths)
