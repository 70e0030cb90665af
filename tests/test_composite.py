import numpy as np
import pytest
from scipy import stats

from sts_online import BranchLengthPrior, CompositeLikelihood, ConfigurationError, exponential_log_prior


@pytest.fixture
def composite(engine, five_taxon_tree, hky, gamma4):
    likelihood = CompositeLikelihood(engine)
    likelihood.initialize(hky, gamma4, five_taxon_tree)
    return likelihood


def test_uninitialized():
    likelihood = CompositeLikelihood(engine=None)
    with pytest.raises(ConfigurationError):
        likelihood()


def test_without_terms_equals_engine(composite, engine):
    assert composite() == engine.calculate_log_likelihood()
    assert composite.log_likelihood() == composite()


def test_additional_terms_are_summed(composite, engine, five_taxon_tree):
    base = engine.calculate_log_likelihood()
    composite.add(lambda tree: -1.5)
    composite.add(lambda tree: tree.total_branch_length)
    assert composite() == pytest.approx(base - 1.5 + five_taxon_tree.total_branch_length)


def test_branch_length_prior(five_taxon_tree):
    prior = BranchLengthPrior()
    lengths = prior.unrooted_branch_lengths(five_taxon_tree)
    # Two root edges merged into one
    assert len(lengths) == len(five_taxon_tree.edges()) - 1
    assert lengths.sum() == pytest.approx(five_taxon_tree.total_branch_length)
    assert np.any(np.isclose(lengths, 0.08 + 0.3))
    assert prior(five_taxon_tree) == pytest.approx(np.sum(stats.expon(scale=0.1).logpdf(lengths)))


def test_exponential_log_prior():
    log_prior = exponential_log_prior(mean=2.0)
    assert log_prior(1.0) == pytest.approx(np.log(0.5) - 0.5)
    with pytest.raises(ValueError):
        exponential_log_prior(0.0)


def test_edge_log_likelihoods(composite, engine, five_taxon_tree):
    prior = BranchLengthPrior()
    composite.add(prior)
    pendant_lengths = [0.0, 0.1, 0.5]
    edge_lls = composite.edge_log_likelihoods("Q", pendant_lengths)

    assert list(edge_lls) == five_taxon_tree.edges()
    mid_edges = dict(engine.get_mid_edge_partials())
    for node, value in edge_lls.items():
        expected = max(engine.log_dot(mid_edges[node], "Q", p) for p in pendant_lengths)
        assert value == pytest.approx(expected + prior(five_taxon_tree))


def test_edge_log_likelihoods_prefers_sister(composite, five_taxon_tree):
    # Q differs from A at a single site
    edge_lls = composite.edge_log_likelihoods("Q", [0.0, 0.5])
    best = max(edge_lls, key=edge_lls.get)
    assert best == five_taxon_tree.leaf("A")


def test_create_optimizer_releases_buffers(composite, engine, five_taxon_tree):
    composite()
    free = engine.free_buffer_count()
    a = five_taxon_tree.leaf("A")
    with composite.create_optimizer(a, "Q") as optimizer:
        assert engine.free_buffer_count() == free - 2
        assert optimizer.edge_length == pytest.approx(0.1)
        assert optimizer.max_pendant == pytest.approx(0.2)
        assert np.isfinite(optimizer.log_like(0.05, 0.1))
    assert engine.free_buffer_count() == free


def test_create_optimizer_needs_two_buffers(composite, engine, five_taxon_tree):
    composite()
    held = []
    while engine.free_buffer_count() >= 2:
        held.append(engine.attachment_likelihood(five_taxon_tree.leaf("A"), "Q"))
    with pytest.raises(ConfigurationError):
        composite.create_optimizer(five_taxon_tree.leaf("A"), "Q")
    for attachment in held:
        attachment.close()


def test_calculate_attachment_likelihoods(composite, engine, five_taxon_tree):
    a = five_taxon_tree.leaf("A")
    grid = composite.calculate_attachment_likelihoods("Q", [(a, 0.05)], [0.1])
    with engine.attachment_likelihood(a, "Q") as attachment:
        assert grid[0, 0] == pytest.approx(attachment.log_like(0.05, 0.1))
