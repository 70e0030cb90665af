"""
Branch length priors usable as additional terms of a CompositeLikelihood.
"""

import numpy as np
from scipy import stats
from typing import Callable

from .tree import Tree


def exponential_log_prior(mean: float = 0.1) -> Callable[[float], float]:
    """Log density of an exponential distribution with the given mean."""
    if mean <= 0:
        raise ValueError(f"mean must be positive, got {mean}")
    distribution = stats.expon(scale=mean)
    return lambda length: float(distribution.logpdf(length))


class BranchLengthPrior:
    """
    Independent prior over the branch lengths of an unrooted tree.

    The two edges below the root are one edge of the unrooted tree, so
    their lengths are summed before the per-edge prior is applied.
    """

    def __init__(self, log_prior: Callable[[float], float] = None):
        self.log_prior = log_prior if log_prior is not None else exponential_log_prior()

    def unrooted_branch_lengths(self, tree: Tree) -> np.ndarray:
        root = tree.root
        lengths = [tree.branch_length(u) for u in tree.edges() if tree.parent(u) != root]
        lengths.append(sum(tree.branch_length(u) for u in tree.children(root)))
        return np.array(lengths)

    def __call__(self, tree: Tree) -> float:
        return float(sum(self.log_prior(length) for length in self.unrooted_branch_lengths(tree)))
