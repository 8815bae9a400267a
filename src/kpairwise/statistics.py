"""
sufficient statistics of the K-pairwise model

the same estimator is applied once to the data and then to the Monte Carlo
chains every training iteration
"""
import flax.struct
import jax
import jax.numpy as jnp


def statistics(batch):
    """
    second-moment matrix and population-count histogram of a batch

    cov = sᵀs / M is the co-activation rate (not mean-subtracted), which is
    the model's sufficient statistic for J; p_K[k] is the fraction of rows
    with exactly k active units, k = 0..n
    """
    x = jnp.asarray(batch, dtype=jnp.float32)
    M, n = x.shape
    cov = jnp.dot(x.T, x) / M                                    # [n,n]
    K = jnp.sum(x, axis=1).astype(jnp.int32)                     # [M]
    p_K = jnp.bincount(K, length=n + 1) / M                      # [n+1]
    return cov, p_K


@flax.struct.dataclass
class EmpiricalStatistics:
    cov: jax.Array      # [n,n]
    p_K: jax.Array      # [n+1]

    @property
    def n_units(self) -> int:
        return self.cov.shape[0]


def empirical_statistics(data) -> EmpiricalStatistics:
    cov, p_K = statistics(data)
    return EmpiricalStatistics(cov=cov, p_K=p_K)
