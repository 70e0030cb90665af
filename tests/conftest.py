"""
Shared fixtures for the sts_online tests.
"""

import numpy as np
import pytest

from sts_online import (
    Alignment,
    PartialLikelihoodEngine,
    Tree,
    constant_rates,
    gamma_rates,
    hky85,
    jukes_cantor,
    leaf_partials,
)


def reference_log_likelihood(tree, alignment, model, rate_distribution):
    """Straightforward recursive Felsenstein pruning, without rescaling."""
    n_rates = rate_distribution.n_categories

    def partial(u):
        if tree.is_leaf(u):
            return leaf_partials(alignment.sequence(tree.name(u)), model, n_rates)
        result = 1.0
        for child in tree.children(u):
            below = partial(child)
            propagated = np.stack([
                below[r] @ model.transition_matrix(tree.branch_length(child) * rate).T
                for r, rate in enumerate(rate_distribution.rates)
            ])
            result = result * propagated
        return result

    root = partial(tree.root)
    site_likelihoods = np.einsum("r,rsk,k->s", rate_distribution.weights, root, model.frequencies)
    return float(np.sum(np.log(site_likelihoods)))


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def jc():
    return jukes_cantor()


@pytest.fixture
def hky():
    return hky85(2.5, [0.35, 0.15, 0.2, 0.3])


@pytest.fixture
def uniform_rates():
    return constant_rates()


@pytest.fixture
def gamma4():
    return gamma_rates(4, 0.7)


@pytest.fixture
def five_taxon_tree():
    # ((((A,B),(C,D)),E)
    ab = ((("A", 0.1), ("B", 0.2)), 0.05)
    cd = ((("C", 0.15), ("D", 0.12)), 0.07)
    return Tree.from_nested((((ab, cd), 0.08), ("E", 0.3)))


@pytest.fixture
def five_taxon_alignment():
    return Alignment([
        ("A", "ACGTACGTTACGGACTAGCATTACGAAGCT"),
        ("B", "ACGTACGTTACGGACTTGCATAACGAAGCT"),
        ("C", "ACGAACGTTCCGGACTAGCGTTACGATGCT"),
        ("D", "ACGAACTTTCCGGACTAGCGTTACGATGCA"),
        ("E", "TCGAACTTTCCGCACTAGNGTTACG-TGCA"),
        ("Q", "ACGTACGTTACGGACTAGCATTACGAAGCA"),
    ])


@pytest.fixture
def engine(five_taxon_alignment, hky, gamma4):
    engine = PartialLikelihoodEngine(five_taxon_alignment, hky, gamma4)
    engine.load_substitution_model(hky)
    engine.load_rate_distribution(gamma4)
    return engine
