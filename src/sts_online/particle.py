"""
Particle class for online placement.

A TreeParticle holds one tree hypothesis together with the substitution
model and rate distribution its likelihood is evaluated under, plus the
log importance weight accumulated while taxa are added to it.
"""

from typing import TYPE_CHECKING, Iterable, List, Optional

from .models import RateDistribution, SubstitutionModel
from .tree import Tree

if TYPE_CHECKING:
    from .move import AttachmentProposal


class TreeParticle:
    """
    A particle in the online placement sampler.

    Attributes:
        tree: The tree hypothesis
        model: Substitution model for this tree
        rate_distribution: Among-site rate distribution for this tree
        log_weight: Accumulated log importance weight
    """

    def __init__(
        self,
        tree: Tree,
        model: SubstitutionModel,
        rate_distribution: RateDistribution,
        log_weight: float = 0.0
    ):
        self.tree = tree
        self.model = model
        self.rate_distribution = rate_distribution
        self.log_weight = log_weight

    def copy(self) -> "TreeParticle":
        """
        Create a copy of this particle.

        Trees are immutable, so the copy shares the tree and model and
        only the weight is independent.
        """
        return TreeParticle(self.tree, self.model, self.rate_distribution, self.log_weight)

    def attach(self, leaf_name: str, proposal: "AttachmentProposal") -> "TreeParticle":
        """
        Particle with `leaf_name` attached as described by `proposal`.

        The new particle starts with this particle's weight; the caller
        applies the importance weight update.
        """
        tree, _, _ = self.tree.attach(
            proposal.edge,
            leaf_name,
            proposal.distal_length,
            proposal.pendant_length
        )
        return TreeParticle(tree, self.model, self.rate_distribution, self.log_weight)

    def missing_taxa(self, names: Iterable[str]) -> List[str]:
        """Names from `names` not yet in the tree, in their given order."""
        present = set(self.tree.leaf_names)
        return [name for name in names if name not in present]

    @property
    def num_leaves(self) -> int:
        return self.tree.num_leaves

    def __repr__(self) -> str:
        return (
            f"TreeParticle(num_leaves={self.tree.num_leaves}, "
            f"model={self.model.name}, "
            f"log_weight={self.log_weight:.6f})"
        )


def create_particles(
    trees: Iterable[Tree],
    model: SubstitutionModel,
    rate_distribution: RateDistribution,
    log_weight: Optional[float] = None
) -> List[TreeParticle]:
    """
    One particle per tree, all with the same model and equal weights.

    Args:
        trees: Reference trees (e.g. a posterior sample)
        model: Substitution model shared by all particles
        rate_distribution: Rate distribution shared by all particles
        log_weight: Initial log weight (default 0)

    Returns:
        List of particles
    """
    return [
        TreeParticle(tree, model, rate_distribution, 0.0 if log_weight is None else log_weight)
        for tree in trees
    ]
