"""Tests for the K-pairwise energy, parameter layout and input validation."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from kpairwise.errors import NonBinaryDataError, ShapeMismatchError
from kpairwise.models.kpairwise import (
    KPairwiseEBM,
    enumerate_states,
    exact_statistics,
    params_to_vector,
    validate_parameters,
    vector_to_params,
)


def test_init_gives_zero_parameters():
    model = KPairwiseEBM(n_units=4)

    params = model.init(jax.random.PRNGKey(0), jnp.zeros((1, 4)))['params']

    assert params['J'].shape == (4, 4)
    assert params['VK'].shape == (5,)
    assert float(jnp.abs(params['J']).sum() + jnp.abs(params['VK']).sum()) == 0.0


def test_energy_matches_expanded_form():
    rng = np.random.default_rng(0)
    n = 4
    A = rng.normal(size=(n, n)).astype(np.float32)
    J = (A + A.T) / 2
    VK = rng.normal(size=n + 1).astype(np.float32)
    states = enumerate_states(n)

    E = KPairwiseEBM(n_units=n).apply({'params': {'J': jnp.asarray(J), 'VK': jnp.asarray(VK)}},
                                      jnp.asarray(states))

    for s, e in zip(states, np.asarray(E)):
        expected = sum(J[i, i] * s[i] for i in range(n))
        expected += sum(J[i, j] * s[i] * s[j] for i in range(n) for j in range(n) if i != j)
        expected += VK[s.sum()]
        assert e == pytest.approx(expected, abs=1e-4)


def test_parameter_vector_layout():
    params = {'J': jnp.arange(9.0).reshape(3, 3), 'VK': jnp.arange(9.0, 13.0)}

    vec = params_to_vector(params)
    back = vector_to_params(vec, 3)

    np.testing.assert_array_equal(np.asarray(vec), np.arange(13.0))
    np.testing.assert_array_equal(np.asarray(back['J']), np.asarray(params['J']))
    np.testing.assert_array_equal(np.asarray(back['VK']), np.asarray(params['VK']))


def test_vector_to_params_rejects_wrong_length():
    with pytest.raises(ShapeMismatchError):
        vector_to_params(jnp.zeros(12), 3)


@pytest.mark.parametrize(
    "data, J0, VK0",
    [
        (np.zeros(5), np.zeros((5, 5)), np.zeros(6)),          # data not 2-D
        (np.zeros((0, 2)), np.zeros((2, 2)), np.zeros(3)),     # no samples
        (np.zeros((4, 2)), np.zeros((2, 3)), np.zeros(3)),     # J0 not n x n
        (np.zeros((4, 2)), np.zeros((2, 2)), np.zeros(2)),     # VK0 not n+1
    ],
)
def test_validate_rejects_bad_shapes(data, J0, VK0):
    with pytest.raises(ShapeMismatchError):
        validate_parameters(data, J0, VK0)


def test_validate_rejects_non_binary_data():
    with pytest.raises(NonBinaryDataError):
        validate_parameters(np.array([[0, 2], [1, 0]]), np.zeros((2, 2)), np.zeros(3))


def test_validate_accepts_column_potential():
    data, J0, VK0 = validate_parameters(np.eye(3), np.zeros((3, 3)), np.zeros((4, 1)))

    assert VK0.shape == (4,)
    assert data.dtype == np.int8


def test_exact_statistics_of_flat_model_are_uniform():
    params = {'J': jnp.zeros((3, 3)), 'VK': jnp.zeros(4)}

    cov, p_K = exact_statistics(params)

    np.testing.assert_allclose(np.asarray(p_K), [1 / 8, 3 / 8, 3 / 8, 1 / 8], atol=1e-6)
    expected = np.full((3, 3), 0.25)
    np.fill_diagonal(expected, 0.5)
    np.testing.assert_allclose(np.asarray(cov), expected, atol=1e-6)


def test_enumerate_states_refuses_large_populations():
    with pytest.raises(ValueError):
        enumerate_states(40)
