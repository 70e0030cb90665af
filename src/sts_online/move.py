"""
Proposal of attachment locations for taxa added to a tree.

One attachment step chooses an edge in proportion to its best midpoint
attachment likelihood, finds maximum-likelihood branch lengths on that
edge, draws the distal offset from a truncated normal around the ML
offset and draws the pendant length from a curve-fitted rejection sampler.
The log-densities of all three choices are returned so the caller can
compute importance weights.
"""

import logging
import numpy as np
from dataclasses import dataclass
from scipy import special, stats
from typing import List, Optional, Sequence, Tuple

from .composite import CompositeLikelihood
from .errors import ConfigurationError, ConvergenceError
from .particle import TreeParticle
from .sampler import CurveFitRejectionSampler
from .tripod import AttachmentOptimizer

logger = logging.getLogger(__name__)


@dataclass
class AttachmentConfig:
    """Configuration for attachment proposals."""

    edge_pendant_lengths: Tuple[float, ...] = (0.0, 0.5)
    """Pendant lengths tried at each edge midpoint when choosing an edge"""

    trial_lengths: Tuple[float, ...] = (0.1, 0.15, 0.5)
    """Pendant lengths the likelihood curve is first fitted to"""

    ll_threshold: float = -10.0
    """Pendant sampling support ends this far below the fitted maximum"""

    upper: float = 10.0
    """Right end of the bracket searched for the upper pendant bound"""

    bound_max_iters: int = 100
    """Iteration cap for each pendant bound search"""

    integration_tolerance: float = 1e-3
    """Largest acceptable error estimate of the normalizing integral"""

    optimizer_max_iters: int = 10
    """Iteration cap of each coordinate optimization"""

    optimizer_rounds: int = 2
    """Rounds of alternating pendant / distal optimization"""

    initial_pendant: float = 0.1
    """Starting pendant length for optimization"""

    max_pendant: Optional[float] = None
    """Upper bound of the pendant search (default twice the edge length)"""

    distal_sd_fraction: float = 0.25
    """Standard deviation of the distal proposal, as a fraction of edge length"""

    min_edge_length: float = 1e-8
    """Edges shorter than this get a distal offset of exactly 0"""

    max_rejection_attempts: int = 100000
    """Cap on rejection sampling proposals per pendant draw"""

    def __post_init__(self):
        if len(self.edge_pendant_lengths) == 0:
            raise ConfigurationError("edge_pendant_lengths must not be empty")
        if any(t < 0 for t in self.edge_pendant_lengths):
            raise ConfigurationError("edge_pendant_lengths must be non-negative")
        if self.ll_threshold >= 0:
            raise ConfigurationError(f"ll_threshold must be negative, got {self.ll_threshold}")
        if self.distal_sd_fraction <= 0:
            raise ConfigurationError("distal_sd_fraction must be positive")
        if self.optimizer_rounds < 1:
            raise ConfigurationError("optimizer_rounds must be at least 1")


@dataclass
class AttachmentProposal:
    """Where and how a new leaf is attached, with proposal log-densities."""

    edge: int
    """Node below the chosen edge"""

    edge_log_density: float
    """Log-probability of choosing the edge"""

    distal_length: float
    """Distance from the attachment point down to `edge`"""

    distal_log_density: float
    """Log-density of the distal length"""

    pendant_length: float
    """Length of the new leaf's branch"""

    pendant_log_density: float
    """Log-density of the pendant length"""

    ml_distal_length: float
    """Maximum likelihood distal length (diagnostic)"""

    ml_pendant_length: float
    """Maximum likelihood pendant length (diagnostic)"""

    proposal_method_name: str = "lcfit"
    """Name of the method that produced the proposal"""

    def log_proposal_density(self) -> float:
        return self.edge_log_density + self.distal_log_density + self.pendant_log_density


class AttachmentMove:
    """
    Proposes attachments of query taxa to particles.

    Attributes:
        likelihood: Composite likelihood used to score attachments
        taxa_to_add: Query taxa, in the order they are added
        config: Proposal settings
        proposals: (leaf name, proposal) for every proposal made
    """

    def __init__(
        self,
        likelihood: CompositeLikelihood,
        taxa_to_add: Sequence[str],
        config: Optional[AttachmentConfig] = None
    ):
        self.likelihood = likelihood
        self.taxa_to_add = list(taxa_to_add)
        self.config = config or AttachmentConfig()
        self.proposals: List[Tuple[str, AttachmentProposal]] = []

    def choose_edge(self, leaf_name: str, rng: np.random.Generator) -> Tuple[int, float]:
        """
        Pick an edge with probability proportional to its best midpoint
        attachment likelihood.

        Returns:
            Tuple of (node below the edge, log-probability of choosing it)
        """
        edge_lls = self.likelihood.edge_log_likelihoods(leaf_name, self.config.edge_pendant_lengths)
        nodes = list(edge_lls)
        lls = np.array(list(edge_lls.values()))
        if not np.any(np.isfinite(lls)):
            raise ConvergenceError(f"No edge has a finite attachment likelihood for {leaf_name}")

        log_probs = lls - special.logsumexp(lls)
        i = rng.choice(len(nodes), p=np.exp(log_probs))
        return nodes[i], float(log_probs[i])

    def optimize_branch_lengths(self, optimizer: AttachmentOptimizer) -> Tuple[float, float]:
        """
        Alternate pendant and distal optimization from the edge midpoint.

        Returns:
            Tuple of (ML distal length, ML pendant length)
        """
        config = self.config
        distal = optimizer.edge_length / 2
        pendant = min(config.initial_pendant, optimizer.max_pendant)
        for _ in range(config.optimizer_rounds):
            pendant = optimizer.optimize_pendant(distal, pendant, config.optimizer_max_iters)
            distal = optimizer.optimize_distal(distal, pendant, config.optimizer_max_iters)
        return distal, pendant

    def sample_distal(
        self,
        ml_distal: float,
        edge_length: float,
        rng: np.random.Generator
    ) -> Tuple[float, float]:
        """
        Distal length from a normal around `ml_distal` truncated to
        [0, edge_length].

        Returns:
            Tuple of (distal length, its log-density)
        """
        if edge_length < self.config.min_edge_length:
            return 0.0, 0.0
        sd = edge_length * self.config.distal_sd_fraction
        distribution = stats.truncnorm(
            (0.0 - ml_distal) / sd, (edge_length - ml_distal) / sd, loc=ml_distal, scale=sd
        )
        distal = min(max(float(distribution.rvs(random_state=rng)), 0.0), edge_length)
        return distal, float(distribution.logpdf(distal))

    def sampler(self, optimizer: AttachmentOptimizer, distal: float,
                rng: np.random.Generator) -> CurveFitRejectionSampler:
        """Pendant length sampler fitted at a fixed distal length."""
        config = self.config
        return CurveFitRejectionSampler.fit(
            lambda pendant: optimizer.log_like(distal, pendant),
            rng,
            trial_lengths=config.trial_lengths,
            ll_threshold=config.ll_threshold,
            upper=config.upper,
            max_bound_iters=config.bound_max_iters,
            tolerance=config.integration_tolerance,
            max_attempts=config.max_rejection_attempts
        )

    def propose(self, leaf_name: str, particle: TreeParticle, rng: np.random.Generator) -> AttachmentProposal:
        """
        Propose an attachment of `leaf_name` to the particle's tree.

        Args:
            leaf_name: Query taxon registered with the engine
            particle: Particle whose tree, model and rates are used
            rng: Source of all randomness

        Returns:
            The proposal

        Raises:
            ConfigurationError: not enough free engine buffers
            ConvergenceError: the pendant sampler could not be built
        """
        self.likelihood.initialize(particle.model, particle.rate_distribution, particle.tree)
        edge, edge_log_density = self.choose_edge(leaf_name, rng)

        with self.likelihood.create_optimizer(edge, leaf_name, self.config.max_pendant) as optimizer:
            ml_distal, ml_pendant = self.optimize_branch_lengths(optimizer)
            distal, distal_log_density = self.sample_distal(ml_distal, optimizer.edge_length, rng)
            pendant, pendant_log_density = self.sampler(optimizer, distal, rng).sample()

        proposal = AttachmentProposal(
            edge=edge,
            edge_log_density=edge_log_density,
            distal_length=distal,
            distal_log_density=distal_log_density,
            pendant_length=pendant,
            pendant_log_density=pendant_log_density,
            ml_distal_length=ml_distal,
            ml_pendant_length=ml_pendant
        )
        self.proposals.append((leaf_name, proposal))
        logger.info(
            "Proposed %s on edge %d: distal=%.4g (ML %.4g), pendant=%.4g (ML %.4g), log q=%.4f",
            leaf_name, edge, distal, ml_distal, pendant, ml_pendant, proposal.log_proposal_density()
        )
        return proposal

    def __call__(self, particle: TreeParticle, rng: np.random.Generator) -> Tuple[TreeParticle, AttachmentProposal]:
        """
        Attach the next query taxon missing from the particle.

        Returns:
            Tuple of (extended particle, the proposal used)
        """
        missing = particle.missing_taxa(self.taxa_to_add)
        if not missing:
            raise ConfigurationError("All query taxa are already in the tree")
        leaf_name = missing[0]
        proposal = self.propose(leaf_name, particle, rng)
        return particle.attach(leaf_name, proposal), proposal
