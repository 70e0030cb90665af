"""
sts-online: Online Bayesian phylogenetic placement.

Adds query taxa one at a time to a weighted sample of reference trees,
proposing attachment points from an incremental partial-likelihood
engine and a curve-fitted pendant branch length sampler.
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    PlacementError,
    ConfigurationError,
    BackendError,
    ConvergenceError
)

# Data
from .alignment import Alignment, leaf_partials
from .tree import Tree
from .models import (
    SubstitutionModel,
    RateDistribution,
    jukes_cantor,
    hky85,
    gtr,
    constant_rates,
    gamma_rates
)

# Likelihood calculation
from .backend import BackendMetrics, LikelihoodBackend, Operation, ReturnCode
from .likelihood_vector import LikelihoodVector
from .likelihood import AttachmentLikelihood, PartialLikelihoodEngine
from .composite import CompositeLikelihood
from .priors import BranchLengthPrior, exponential_log_prior

# Attachment proposals
from .tripod import AttachmentOptimizer, minimize
from .curvefit import BSMCurve, DEFAULT_INIT, fit_bsm_log_likelihood
from .sampler import CurveFitRejectionSampler
from .particle import TreeParticle, create_particles
from .move import AttachmentConfig, AttachmentMove, AttachmentProposal

# Simulation
from .simulate import (
    SimulatedDataset,
    simulate_trees,
    evolve_sequences,
    simulate_dataset
)

__all__ = [
    # Version
    "__version__",
    # Errors
    "PlacementError",
    "ConfigurationError",
    "BackendError",
    "ConvergenceError",
    # Data
    "Alignment",
    "leaf_partials",
    "Tree",
    "SubstitutionModel",
    "RateDistribution",
    "jukes_cantor",
    "hky85",
    "gtr",
    "constant_rates",
    "gamma_rates",
    # Likelihood
    "BackendMetrics",
    "LikelihoodBackend",
    "Operation",
    "ReturnCode",
    "LikelihoodVector",
    "AttachmentLikelihood",
    "PartialLikelihoodEngine",
    "CompositeLikelihood",
    "BranchLengthPrior",
    "exponential_log_prior",
    # Attachment proposals
    "AttachmentOptimizer",
    "minimize",
    "BSMCurve",
    "DEFAULT_INIT",
    "fit_bsm_log_likelihood",
    "CurveFitRejectionSampler",
    "TreeParticle",
    "create_particles",
    "AttachmentConfig",
    "AttachmentMove",
    "AttachmentProposal",
    # Simulation
    "SimulatedDataset",
    "simulate_trees",
    "evolve_sequences",
    "simulate_dataset",
]
