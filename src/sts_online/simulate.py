"""
Simulated trees and alignments.

Genealogies come from msprime's coalescent (haploid samples, no
recombination, so each tree sequence holds a single tree) and are
converted through tskit. Sequences are then evolved down the tree under a
SubstitutionModel and RateDistribution, so data and likelihood share one
model.
"""

import msprime
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .alignment import Alignment
from .models import RateDistribution, SubstitutionModel
from .tree import Tree


def simulate_trees(
    num_samples: int,
    num_trees: int = 1,
    population_size: float = 1.0,
    branch_length_scale: float = 0.05,
    names: Optional[Sequence[str]] = None,
    random_seed: Optional[int] = None
) -> List[Tree]:
    """
    Simulate independent coalescent trees.

    Args:
        num_samples: Number of leaves
        num_trees: Number of trees to simulate
        population_size: Haploid population size passed to msprime
        branch_length_scale: Multiplier converting generations to
            substitutions per site
        names: Leaf names (default "t0", "t1", ...)
        random_seed: Seed for msprime

    Returns:
        List of trees
    """
    if num_samples < 2:
        raise ValueError("At least two samples are required")
    if names is None:
        names = [f"t{i}" for i in range(num_samples)]

    replicates = msprime.sim_ancestry(
        samples=num_samples,
        ploidy=1,
        population_size=population_size,
        sequence_length=1,
        recombination_rate=0,
        num_replicates=num_trees,
        random_seed=random_seed
    )
    trees = []
    for ts in replicates:
        tree = Tree.from_tskit(ts.first(), names)
        trees.append(tree.with_branch_lengths(tree.branch_lengths * branch_length_scale))
    return trees


def evolve_sequences(
    tree: Tree,
    model: SubstitutionModel,
    rate_distribution: RateDistribution,
    num_sites: int,
    rng: np.random.Generator
) -> Alignment:
    """
    Evolve sequences from the root to the leaves.

    Root states are drawn from the model's stationary frequencies and each
    site draws its rate category from the rate distribution.

    Args:
        tree: Tree to evolve along
        model: Substitution model
        rate_distribution: Among-site rate distribution
        num_sites: Alignment length
        rng: Random generator

    Returns:
        Alignment of the leaf sequences, in preorder
    """
    n_states = model.n_states
    categories = rng.choice(rate_distribution.n_categories, size=num_sites, p=rate_distribution.weights)
    states = {tree.root: rng.choice(n_states, size=num_sites, p=model.frequencies)}

    for u in tree.nodes(order="preorder"):
        if u == tree.root:
            continue
        parent_states = states[tree.parent(u)]
        child_states = np.empty(num_sites, dtype=int)
        for category, rate in enumerate(rate_distribution.rates):
            sites = np.flatnonzero(categories == category)
            if len(sites) == 0:
                continue
            p = model.transition_matrix(tree.branch_length(u) * rate)
            cumulative = np.cumsum(p[parent_states[sites]], axis=1)
            draws = rng.random(len(sites)) * cumulative[:, -1]
            child_states[sites] = np.minimum((cumulative < draws[:, None]).sum(axis=1), n_states - 1)
        states[u] = child_states

    alphabet = np.array(list(model.alphabet))
    return Alignment(
        (tree.name(u), "".join(alphabet[states[u]])) for u in tree.leaves()
    )


@dataclass
class SimulatedDataset:
    """A true tree, its alignment and reference trees over a subset of taxa."""

    true_tree: Tree
    """Tree over all taxa the alignment was evolved on"""

    alignment: Alignment
    """Sequences of all taxa"""

    reference_names: List[str] = field(default_factory=list)
    """Taxa present in the reference trees"""

    query_names: List[str] = field(default_factory=list)
    """Taxa to be added"""

    reference_trees: List[Tree] = field(default_factory=list)
    """Trees over the reference taxa, standing in for a posterior sample"""


def simulate_dataset(
    num_reference: int,
    num_query: int,
    num_sites: int,
    model: SubstitutionModel,
    rate_distribution: RateDistribution,
    num_reference_trees: int = 10,
    branch_length_scale: float = 0.05,
    jitter: float = 0.1,
    random_seed: Optional[int] = None
) -> SimulatedDataset:
    """
    Simulate a placement problem.

    The reference trees are the true tree simplified to the reference taxa
    (with tskit), with every branch length multiplied by independent
    log-normal noise of standard deviation `jitter`.

    Args:
        num_reference: Taxa in the reference trees
        num_query: Taxa to add
        num_sites: Alignment length
        model: Substitution model for evolving sequences
        rate_distribution: Rate distribution for evolving sequences
        num_reference_trees: Size of the reference tree sample
        branch_length_scale: Generations to substitutions multiplier
        jitter: Log-scale noise on reference branch lengths
        random_seed: Seed for msprime and numpy

    Returns:
        SimulatedDataset
    """
    if num_reference < 2:
        raise ValueError("At least two reference taxa are required")
    rng = np.random.default_rng(random_seed)
    num_samples = num_reference + num_query
    names = [f"t{i}" for i in range(num_samples)]

    ts = msprime.sim_ancestry(
        samples=num_samples,
        ploidy=1,
        population_size=1.0,
        sequence_length=1,
        recombination_rate=0,
        random_seed=int(rng.integers(1, 2**31))
    )
    true_tree = Tree.from_tskit(ts.first(), names)
    true_tree = true_tree.with_branch_lengths(true_tree.branch_lengths * branch_length_scale)
    alignment = evolve_sequences(true_tree, model, rate_distribution, num_sites, rng)

    # Samples are nodes 0 .. num_samples - 1 in name order
    reference_ts = ts.simplify(samples=list(range(num_reference)))
    reference = Tree.from_tskit(reference_ts.first(), names[:num_reference])
    reference_lengths = reference.branch_lengths * branch_length_scale

    reference_trees = [
        reference.with_branch_lengths(
            reference_lengths * rng.lognormal(0.0, jitter, size=len(reference_lengths))
        )
        for _ in range(num_reference_trees)
    ]

    return SimulatedDataset(
        true_tree=true_tree,
        alignment=alignment,
        reference_names=names[:num_reference],
        query_names=names[num_reference:],
        reference_trees=reference_trees
    )
