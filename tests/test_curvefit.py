import numpy as np
import pytest

from sts_online import BSMCurve, ConvergenceError, DEFAULT_INIT, fit_bsm_log_likelihood


def test_ml_t_closed_form():
    curve = BSMCurve(c=800.0, m=200.0, r=1.3, b=0.05)
    grid = np.linspace(0.0, 2.0, 200001)
    assert curve.ml_t() == pytest.approx(grid[np.argmax(curve.log_like(grid))], abs=1e-4)


def test_ml_t_clamped_at_zero():
    curve = BSMCurve(c=800.0, m=200.0, r=1.3, b=1.0)
    assert curve.ml_t() == 0.0


def test_log_like_scalar_and_array():
    curve = DEFAULT_INIT
    values = curve.log_like(np.array([0.1, 0.2]))
    assert values.shape == (2,)
    assert curve.log_like(0.1) == pytest.approx(values[0])
    assert isinstance(curve.log_like(0.1), float)


def test_scaled():
    curve = DEFAULT_INIT.scaled(2.0)
    assert curve.c == 3000.0
    assert curve.m == 2000.0
    assert curve.log_like(0.3) == pytest.approx(2 * DEFAULT_INIT.log_like(0.3))


@pytest.mark.parametrize("true_curve", [
    BSMCurve(c=800.0, m=200.0, r=1.3, b=0.05),
    BSMCurve(c=300.0, m=30.0, r=1.0, b=0.01),
    BSMCurve(c=2000.0, m=900.0, r=2.0, b=0.2),
])
def test_recovers_exact_curve(true_curve):
    fitted, points = fit_bsm_log_likelihood(
        true_curve.log_like, trial_lengths=(0.05, 0.1, 0.15, 0.3, 0.5, 0.8)
    )
    assert len(points) >= 6
    assert fitted.ml_t() == pytest.approx(true_curve.ml_t(), abs=1e-2)
    for t in (0.05, 0.2, 0.5):
        assert fitted.log_like(t) == pytest.approx(true_curve.log_like(t), rel=1e-2)


def test_extends_points_to_bracket_maximum():
    true_curve = BSMCurve(c=1000.0, m=100.0, r=1.0, b=0.001)
    # Maximum near 0.2, trial points all to the right
    _, points = fit_bsm_log_likelihood(true_curve.log_like, trial_lengths=(0.5, 0.8, 1.0))
    ts = [t for t, _ in points]
    assert min(ts) < true_curve.ml_t()


def test_non_finite_log_likelihood():
    with pytest.raises(ConvergenceError):
        fit_bsm_log_likelihood(lambda t: -np.inf)


def test_invalid_trial_lengths():
    with pytest.raises(ValueError):
        fit_bsm_log_likelihood(DEFAULT_INIT.log_like, trial_lengths=(0.0, 0.1))


def test_tail_extended_until_drop():
    true_curve = BSMCurve(c=80.0, m=20.0, r=1.3, b=0.3)
    best = true_curve.log_like(true_curve.ml_t())
    # Within 10 log units of the maximum at every default trial length
    assert true_curve.log_like(0.5) > best - 10

    fitted, points = fit_bsm_log_likelihood(true_curve.log_like, tail_drop=10.0, max_length=10.0)
    ts = [t for t, _ in points]
    assert max(ts) == 2.0
    assert dict(points)[2.0] < best - 10
    assert fitted.log_like(10.0) < fitted.log_like(fitted.ml_t()) - 10


def test_tail_stops_at_max_length():
    calls = []

    def flat(t):
        calls.append(t)
        return -1.0 - 1e-3 * t

    _, points = fit_bsm_log_likelihood(flat, tail_drop=10.0, max_length=3.0)
    assert max(t for t, _ in points) == 3.0
    assert all(t <= 3.0 for t in calls)


def test_invalid_tail_drop():
    with pytest.raises(ValueError):
        fit_bsm_log_likelihood(DEFAULT_INIT.log_like, tail_drop=0.0)
