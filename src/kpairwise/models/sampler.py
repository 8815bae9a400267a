"""
Gibbs sampling for K-pairwise models

Implements single-site (Glauber) Gibbs updates on binary states {0, 1},
applied to every row of a batch at once

We use this sampler to burn in and then advance the persistent chains
during training, so the chain state is always passed in and handed back
"""
from functools import partial

import jax
import jax.numpy as jnp


def _delta_energy(x, K, J_offdiag, J, VK, i):
    """(energy change when unit i switches on, population count without unit i), per row"""
    K_others = K - x[:, i].astype(K.dtype)
    field = J[i, i] + 2.0 * jnp.dot(x, J_offdiag[:, i])                  # [M]
    return field + VK[K_others + 1] - VK[K_others], K_others


def spike_probability(x, J, VK, unit, K=None):
    """
    conditional probability that `unit` is active, for every row of x

    uses the local field J_ii + 2∑_{j≠i} J_ij s_j and the change in the
    population potential when the unit switches on
    """
    x = jnp.asarray(x, dtype=jnp.float32)
    J = jnp.asarray(J, dtype=jnp.float32)
    VK = jnp.asarray(VK, dtype=jnp.float32)
    if K is None:
        K = jnp.sum(x, axis=1).astype(jnp.int32)
    J_offdiag = J - jnp.diag(jnp.diag(J))
    delta_E, _ = _delta_energy(x, K, J_offdiag, J, VK, unit)
    # 1 / (1 + exp(delta_E)), saturates to 0 or 1 instead of overflowing
    return jax.nn.sigmoid(-delta_E)


@partial(jax.jit, static_argnames=("steps",))
def _gibbs_scan(x, K, J, VK, start_unit, key, steps):
    n = x.shape[1]
    J_offdiag = J - jnp.diag(jnp.diag(J))

    def step_fn(carry, t):
        x, K = carry
        i = (start_unit + t) % n
        delta_E, K_others = _delta_energy(x, K, J_offdiag, J, VK, i)
        p_spike = jax.nn.sigmoid(-delta_E)
        # fresh uniform per row and per step
        u = jax.random.uniform(jax.random.fold_in(key, t), (x.shape[0],))
        spike = u < p_spike
        x = x.at[:, i].set(spike.astype(x.dtype))
        K = K_others + spike.astype(K.dtype)
        return (x, K), None

    (x, K), _ = jax.lax.scan(step_fn, (x, K), jnp.arange(steps))
    return x, K


def advance_with_counts(batch, J, VK, steps, key, start_unit=0):
    """
    run `steps` single-site Gibbs updates on every row of batch

    args:
        batch: [M, n] binary states (any numeric/bool dtype)
        J: [n, n] couplings, diagonal = per-unit bias
        VK: [n+1] population-count potential
        steps: number of single-unit updates; unit visited at step t is
            (start_unit + t) mod n
        key: JAX PRNG key; same key and inputs give the same output
        start_unit: first unit to visit

    returns:
        (batch [M, n] in the input dtype, K [M] running population counts)
    """
    if steps < 0:
        raise ValueError(f"steps must be >= 0, got {steps}")
    batch = jnp.asarray(batch)
    dtype = batch.dtype
    x = batch.astype(jnp.float32)
    K = jnp.sum(x, axis=1).astype(jnp.int32)
    if steps == 0 or x.shape[1] == 0:
        return batch, K

    x, K = _gibbs_scan(
        x, K,
        jnp.asarray(J, dtype=jnp.float32),
        jnp.asarray(VK, dtype=jnp.float32),
        start_unit, key, steps=steps,
    )
    return x.astype(dtype), K


def advance(batch, J, VK, steps, key, start_unit=0):
    """advance a batch of chains by `steps` Gibbs updates (see advance_with_counts)"""
    x, _ = advance_with_counts(batch, J, VK, steps, key, start_unit=start_unit)
    return x
