import numpy as np
import pytest
from scipy import integrate, stats

from sts_online import BSMCurve, ConvergenceError, CurveFitRejectionSampler, fit_bsm_log_likelihood


@pytest.fixture
def curve():
    return BSMCurve(c=800.0, m=200.0, r=1.3, b=0.05)


def test_bounds_at_threshold(curve, rng):
    sampler = CurveFitRejectionSampler(curve, rng)
    assert sampler.t_min < sampler.ml_t < sampler.t_max
    assert curve.log_like(sampler.t_min) - sampler.ml_ll == pytest.approx(-10.0, abs=1e-6)
    assert curve.log_like(sampler.t_max) - sampler.ml_ll == pytest.approx(-10.0, abs=1e-6)


def test_left_bound_zero_when_curve_high_at_zero(rng):
    curve = BSMCurve(c=80.0, m=20.0, r=1.3, b=0.3)
    sampler = CurveFitRejectionSampler(curve, rng)
    assert curve.log_like(0.0) - sampler.ml_ll > -10.0
    assert sampler.t_min == 0.0


def test_maximum_at_zero(rng):
    curve = BSMCurve(c=800.0, m=200.0, r=1.3, b=1.0)
    sampler = CurveFitRejectionSampler(curve, rng)
    assert sampler.ml_t == 0.0
    assert sampler.t_min == 0.0
    assert sampler.t_max > 0.0


def test_density_normalized(curve, rng):
    sampler = CurveFitRejectionSampler(curve, rng)
    total, _ = integrate.quad(lambda t: np.exp(sampler.log_density(t)), sampler.t_min, sampler.t_max)
    assert total == pytest.approx(1.0, abs=1e-6)
    assert sampler.log_density(sampler.t_max + 0.1) == -np.inf


def test_returned_log_density_matches_curve(curve, rng):
    sampler = CurveFitRejectionSampler(curve, rng)
    for _ in range(20):
        t, log_density = sampler.sample()
        assert sampler.t_min <= t <= sampler.t_max
        expected = curve.log_like(t) - sampler.ml_ll - np.log(sampler.auc)
        assert log_density == pytest.approx(expected)
        assert log_density == pytest.approx(sampler.log_density(t))


def test_samples_follow_fitted_density(curve):
    sampler = CurveFitRejectionSampler(curve, np.random.default_rng(7))
    samples = np.array([sampler.sample()[0] for _ in range(2000)])

    def cdf(x):
        return np.array([
            integrate.quad(lambda t: np.exp(sampler.log_density(t)), sampler.t_min, xi)[0]
            for xi in np.atleast_1d(x)
        ])

    result = stats.kstest(samples, cdf)
    assert result.pvalue > 1e-3


def test_same_seed_same_draws(curve):
    a = CurveFitRejectionSampler(curve, np.random.default_rng(3))
    b = CurveFitRejectionSampler(curve, np.random.default_rng(3))
    assert [a.sample() for _ in range(5)] == [b.sample() for _ in range(5)]


def test_flat_curve_cannot_be_bounded(rng):
    with pytest.raises(ConvergenceError):
        CurveFitRejectionSampler(BSMCurve(c=1.01, m=1.0, r=1.0, b=0.5), rng)


def test_fit_from_log_likelihood(curve, rng):
    sampler = CurveFitRejectionSampler.fit(
        curve.log_like, rng, trial_lengths=(0.05, 0.1, 0.15, 0.3, 0.5, 0.8)
    )
    assert sampler.ml_t == pytest.approx(curve.ml_t(), abs=1e-2)
    t, log_density = sampler.sample()
    assert np.isfinite(log_density)


def test_positive_threshold_rejected(curve, rng):
    with pytest.raises(ValueError):
        CurveFitRejectionSampler(curve, rng, ll_threshold=1.0)


def test_fit_to_short_alignment_pendant_profile(engine, five_taxon_tree, rng):
    engine.load_tree(five_taxon_tree)
    with engine.attachment_likelihood(five_taxon_tree.leaf("A"), "Q") as attachment:
        def profile(pendant):
            return attachment.log_like(0.05, pendant)

        curve, _ = fit_bsm_log_likelihood(profile, tail_drop=10.0, max_length=10.0)
        assert curve.log_like(10.0) < curve.log_like(curve.ml_t()) - 10.0

        sampler = CurveFitRejectionSampler.fit(profile, rng)
        assert sampler.t_max < sampler.upper
        t, log_density = sampler.sample()
        assert sampler.t_min <= t <= sampler.t_max
        assert np.isfinite(log_density)
