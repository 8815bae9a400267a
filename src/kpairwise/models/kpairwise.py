"""
K-pairwise energy-based model for binary population activity

Implements the energy of the pairwise maximum-entropy model augmented with a
potential on the population count K = number of active units

Also holds the parameter layout helpers (flat vector <-> {J, VK}), input
validation, and brute-force enumeration for small populations
"""
import itertools

import flax.linen as nn
import jax.numpy as jnp
import numpy as np

from kpairwise.errors import NonBinaryDataError, ShapeMismatchError


# largest population we are willing to enumerate exactly (2^n states)
MAX_EXACT_UNITS = 20


# K-pairwise energy-based model
class KPairwiseEBM(nn.Module):
    """
    K-pairwise EBM (binary s_i ∈ {0, 1}).

    energy function:
        E(s) = sᵀ J s + V_K[K(s)]
             = ∑_i J_ii s_i  +  ∑_{i≠j} J_ij s_i s_j  +  V_K[K(s)]

    where:
        s ∈ {0,1}^n            # one indicator per unit (neuron spiked in this bin)
        K(s) = ∑_i s_i         # population count
        J ∈ ℝ^{n×n}            # diag: per-unit bias, off-diag: symmetric couplings
        V_K ∈ ℝ^{n+1}          # potential per population count

    notes:
        • s_i² = s_i, so the diagonal of J acts as a linear bias
        • flipping s_i from 0 to 1 changes the energy by
              ΔE = J_ii + 2∑_{j≠i} J_ij s_j + V_K[K_others+1] − V_K[K_others]
          for symmetric J, which is what the Gibbs sampler uses
        • defines P(s) ∝ exp(−E(s))
    """
    n_units: int

    @nn.compact
    def __call__(self, s):
        x = s.astype(jnp.float32)                                       # [B,n]
        J = self.param('J', nn.initializers.zeros, (self.n_units, self.n_units))
        VK = self.param('VK', nn.initializers.zeros, (self.n_units + 1,))
        K = jnp.sum(x, axis=-1).astype(jnp.int32)                       # [B]
        E = jnp.einsum('bi,ij,bj->b', x, J, x) + VK[K]                  # [B]
        return E


def params_to_vector(params):
    """flatten {J, VK} into the length n²+n+1 parameter vector (J row-major, then VK)"""
    return jnp.concatenate([jnp.ravel(params['J']), jnp.ravel(params['VK'])])


def vector_to_params(vec, n_units: int):
    """inverse of params_to_vector"""
    vec = jnp.asarray(vec)
    expected = n_units * n_units + n_units + 1
    if vec.shape != (expected,):
        raise ShapeMismatchError(f"parameter vector must have shape ({expected},), got {vec.shape}")
    return {
        'J': vec[:n_units * n_units].reshape(n_units, n_units),
        'VK': vec[n_units * n_units:],
    }


def validate_parameters(data, J0, VK0):
    """
    check shapes and binarity before any sampling

    returns (data, J0, VK0) as numpy arrays; VK0 given as a row or column
    vector is flattened to length n+1
    """
    data = np.asarray(data)
    if data.ndim != 2:
        raise ShapeMismatchError(f"data must be a 2-D (samples x units) matrix, got shape {data.shape}")
    if data.shape[0] == 0:
        raise ShapeMismatchError("data must contain at least one sample")
    n = data.shape[1]

    J0 = np.asarray(J0, dtype=np.float32)
    if J0.shape != (n, n):
        raise ShapeMismatchError(f"J0 must have shape ({n}, {n}), got {J0.shape}")

    VK0 = np.asarray(VK0, dtype=np.float32)
    if VK0.ndim == 2 and 1 in VK0.shape:
        VK0 = VK0.reshape(-1)
    if VK0.shape != (n + 1,):
        raise ShapeMismatchError(f"VK0 must have shape ({n + 1},), got {VK0.shape}")

    if not np.isin(data, (0, 1)).all():
        raise NonBinaryDataError("data entries must be 0 or 1")

    return data.astype(np.int8), J0, VK0


def enumerate_states(n_units: int):
    """all 2^n binary states as an int8 [2^n, n] array"""
    if n_units > MAX_EXACT_UNITS:
        raise ValueError(f"refusing to enumerate 2^{n_units} states (max n={MAX_EXACT_UNITS})")
    return np.array(list(itertools.product((0, 1), repeat=n_units)), dtype=np.int8).reshape(2 ** n_units, n_units)


def exact_statistics(params):
    """
    exact model statistics by enumerating every state

    returns (second-moment matrix [n,n], p_K [n+1]) under P(s) ∝ exp(−E(s)),
    the same quantities `statistics` estimates from samples
    """
    n = params['J'].shape[0]
    states = jnp.asarray(enumerate_states(n), dtype=jnp.float32)
    energies = KPairwiseEBM(n_units=n).apply({'params': params}, states)
    logw = -energies - jnp.max(-energies)
    prob = jnp.exp(logw) / jnp.sum(jnp.exp(logw))
    cov = jnp.einsum('b,bi,bj->ij', prob, states, states)
    K = jnp.sum(states, axis=1).astype(jnp.int32)
    p_K = jnp.zeros(n + 1).at[K].add(prob)
    return cov, p_K
