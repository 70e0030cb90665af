import numpy as np
import pytest

from sts_online import BackendMetrics, LikelihoodBackend, Operation, ReturnCode, jukes_cantor, leaf_partials


@pytest.fixture
def backend(jc):
    backend = LikelihoodBackend(n_buffers=5, n_states=4, n_sites=3, n_rates=2, n_matrices=6)
    evec, ivec, evals = jc.eigen_decomposition()
    assert backend.set_eigen_decomposition(0, evec, ivec, evals) == ReturnCode.SUCCESS
    assert backend.set_state_frequencies(0, jc.frequencies) == ReturnCode.SUCCESS
    assert backend.set_category_rates([0.5, 1.5]) == ReturnCode.SUCCESS
    assert backend.set_category_weights(0, [0.5, 0.5]) == ReturnCode.SUCCESS
    for i, sequence in enumerate(["ACG", "ACT", "GCT"]):
        assert backend.set_partials(i, leaf_partials(sequence, jc, 2)) == ReturnCode.SUCCESS
    return backend


def test_transition_matrices_match_model(backend, jc):
    assert backend.update_transition_matrices(0, [0, 1], [0.1, 0.4]) == ReturnCode.SUCCESS
    code, matrices = backend.get_transition_matrix(1)
    assert code == ReturnCode.SUCCESS
    assert matrices.shape == (2, 4, 4)
    np.testing.assert_allclose(matrices[0], jc.transition_matrix(0.2), atol=1e-12)
    np.testing.assert_allclose(matrices[1], jc.transition_matrix(0.6), atol=1e-12)
    np.testing.assert_allclose(matrices.sum(axis=2), 1.0)


def test_negative_length_rejected(backend):
    assert backend.update_transition_matrices(0, [0], [-0.1]) == ReturnCode.ERROR_OUT_OF_RANGE
    assert backend.update_transition_matrices(0, [0], [np.inf]) == ReturnCode.ERROR_OUT_OF_RANGE


def test_matrix_index_out_of_range(backend):
    assert backend.update_transition_matrices(0, [6], [0.1]) == ReturnCode.ERROR_OUT_OF_RANGE


def test_update_partials_errors(backend):
    backend.update_transition_matrices(0, [0, 1], [0.1, 0.1])
    assert backend.update_partials([Operation(0, 0, 0, 1, 1)]) == ReturnCode.ERROR_GENERAL
    assert backend.update_partials([Operation(3, 0, 0, 4, 1)]) == ReturnCode.ERROR_UNINITIALIZED_INSTANCE
    assert backend.update_partials([Operation(3, 0, 0, 9, 1)]) == ReturnCode.ERROR_OUT_OF_RANGE


def test_uninitialized_buffer_read(backend):
    code, partials, scale = backend.get_partials(4)
    assert code == ReturnCode.ERROR_UNINITIALIZED_INSTANCE
    assert partials is None


def test_uninitialized_model():
    backend = LikelihoodBackend(n_buffers=2, n_states=4, n_sites=1, n_rates=1)
    assert backend.update_transition_matrices(0, [0], [0.1]) == ReturnCode.ERROR_UNINITIALIZED_INSTANCE


def cherry_log_likelihood(backend):
    assert backend.update_transition_matrices(0, [0, 1, 2], [0.1, 0.2, 0.3]) == ReturnCode.SUCCESS
    ops = [Operation(3, 0, 0, 1, 1), Operation(4, 3, 2, 2, 2)]
    assert backend.update_partials(ops) == ReturnCode.SUCCESS
    code, value = backend.calculate_root_log_likelihood(4)
    assert code == ReturnCode.SUCCESS
    return value


def test_scaling_does_not_change_likelihood(jc):
    values = []
    for scaling in (True, False):
        backend = LikelihoodBackend(n_buffers=5, n_states=4, n_sites=3, n_rates=1, scaling=scaling)
        evec, ivec, evals = jc.eigen_decomposition()
        backend.set_eigen_decomposition(0, evec, ivec, evals)
        backend.set_state_frequencies(0, jc.frequencies)
        backend.set_category_rates([1.0])
        backend.set_category_weights(0, [1.0])
        for i, sequence in enumerate(["ACG", "ACT", "GCT"]):
            backend.set_partials(i, leaf_partials(sequence, jc, 1))
        values.append(cherry_log_likelihood(backend))
    assert values[0] == pytest.approx(values[1], rel=1e-12)


def test_scaled_partials_carry_log_scale(backend):
    cherry_log_likelihood(backend)
    code, partials, scale = backend.get_partials(4)
    assert code == ReturnCode.SUCCESS
    np.testing.assert_allclose(partials.max(axis=(0, 2)), 1.0)
    assert np.all(scale < 0)


def test_edge_log_likelihood_matches_root(backend):
    root = cherry_log_likelihood(backend)
    # Node 3 and leaf 2 are 0.3 + 0.3 apart through the root
    assert backend.update_transition_matrices(0, [5], [0.6]) == ReturnCode.SUCCESS
    code, edge = backend.calculate_edge_log_likelihood(3, 2, 5)
    assert code == ReturnCode.SUCCESS
    assert edge == pytest.approx(root, rel=1e-10)


def test_metrics_counted():
    metrics = BackendMetrics()
    jc = jukes_cantor()
    backend = LikelihoodBackend(n_buffers=5, n_states=4, n_sites=3, n_rates=1, metrics=metrics)
    evec, ivec, evals = jc.eigen_decomposition()
    backend.set_eigen_decomposition(0, evec, ivec, evals)
    backend.set_state_frequencies(0, jc.frequencies)
    backend.set_category_rates([1.0])
    backend.set_category_weights(0, [1.0])
    for i, sequence in enumerate(["ACG", "ACT", "GCT"]):
        backend.set_partials(i, leaf_partials(sequence, jc, 1))
    cherry_log_likelihood(backend)

    assert metrics.transition_matrix_updates == 1
    assert metrics.transition_matrices_computed == 3
    assert metrics.partials_updates == 1
    assert metrics.partials_operations == 2
    assert metrics.root_evaluations == 1

    metrics.reset()
    assert metrics.partials_operations == 0
