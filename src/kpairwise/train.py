"""
training loop for K-pairwise models

fits (J, VK) by stochastic approximation: the model side of the
log-likelihood gradient is estimated from persistent Gibbs chains that are
advanced a few steps per iteration and never reinitialized

chains are split into L lanes; each lane is advanced and summarized by its
own worker (vmap on one device, or pmap with one lane per device) and the
per-lane statistics are averaged before every parameter update
"""
import time, pickle
from enum import Enum
from functools import lru_cache, partial
from pathlib import Path

import numpy as np
import jax, optax, jax.numpy as jnp
import flax.struct
from flax.training.train_state import TrainState

from kpairwise.config import FitOptions
from kpairwise.errors import ConfigurationError
from kpairwise.models.kpairwise import (
    KPairwiseEBM,
    vector_to_params,
    validate_parameters,
)
from kpairwise.models.sampler import advance
from kpairwise.statistics import EmpiricalStatistics, empirical_statistics, statistics
from kpairwise.utils import (
    configure_jax,
    report_devices,
    default_num_lanes,
    gradient_errors,
    init_metrics_csv,
    append_metrics_csv,
    truncate_metrics_csv,
    save_fit_metrics,
)


PARALLEL_MODES = ("vmap", "pmap")

# options a resumed run must share with its checkpoint
RESUME_LOCKED_OPTIONS = (
    "learning_rate",
    "samples_per_gradient_estimate",
    "gibbs_steps_per_iteration",
    "burn_in_factor",
    "seed",
)


# persistent chains, partitioned into equal lanes
@flax.struct.dataclass
class ChainLaneSet:
    states: jax.Array                                                # [L, M/L, n]
    next_unit: int = flax.struct.field(pytree_node=False, default=0)  # next unit in the cyclic Gibbs order

    @property
    def n_lanes(self) -> int:
        return self.states.shape[0]

    @property
    def lane_size(self) -> int:
        return self.states.shape[1]

    @property
    def n_units(self) -> int:
        return self.states.shape[2]


class Stage(str, Enum):
    UNINITIALIZED = "uninitialized"
    BURNED_IN = "burned_in"
    TRAINING = "training"
    DONE = "done"


def init_lanes(data, samples: int, n_lanes: int, key) -> ChainLaneSet:
    """
    bootstrap `samples` rows from data and split them into n_lanes lanes

    rows beyond the largest multiple of n_lanes are dropped, so
    samples=10, n_lanes=4 gives 4 lanes of 2 rows
    """
    if n_lanes < 1:
        raise ConfigurationError(f"n_lanes must be >= 1, got {n_lanes}")
    lane_size = samples // n_lanes
    if lane_size == 0:
        raise ConfigurationError(f"{samples} samples cannot fill {n_lanes} lanes")
    data = jnp.asarray(data)
    idx = jax.random.randint(key, (samples,), 0, data.shape[0])
    rows = data[idx][:lane_size * n_lanes]
    return ChainLaneSet(states=rows.reshape(n_lanes, lane_size, data.shape[1]), next_unit=0)


# one lane: advance its chains, then summarize them
def _lane_worker(x, J, VK, start_unit, key, steps):
    x = advance(x, J, VK, steps, key, start_unit=start_unit)
    cov, p_K = statistics(x)
    return x, cov, p_K


@partial(jax.jit, static_argnames=("steps",))
def _vmap_lanes(states, J, VK, start_unit, keys, steps):
    worker = partial(_lane_worker, steps=steps)
    return jax.vmap(worker, in_axes=(0, None, None, None, 0))(states, J, VK, start_unit, keys)


@lru_cache(maxsize=None)
def _pmap_worker(steps):
    return jax.pmap(partial(_lane_worker, steps=steps), in_axes=(0, None, None, None, 0))


def advance_lanes(lanes: ChainLaneSet, params, steps: int, key, parallel="vmap"):
    """
    advance every lane by `steps` Gibbs updates with one worker per lane

    returns (updated lanes, per-lane cov [L,n,n], per-lane p_K [L,n+1]);
    the call returns only after all lanes are done
    """
    if parallel not in PARALLEL_MODES:
        raise ConfigurationError(f"parallel must be one of {PARALLEL_MODES}, got {parallel!r}")
    keys = jax.random.split(key, lanes.n_lanes)
    J = jnp.asarray(params['J'], dtype=jnp.float32)
    VK = jnp.asarray(params['VK'], dtype=jnp.float32)
    start_unit = jnp.asarray(lanes.next_unit, dtype=jnp.int32)

    if parallel == "pmap":
        if lanes.n_lanes > jax.local_device_count():
            raise ConfigurationError(
                f"pmap needs one device per lane: {lanes.n_lanes} lanes, {jax.local_device_count()} devices"
            )
        states, covs, p_Ks = _pmap_worker(steps)(lanes.states, J, VK, start_unit, keys)
    else:
        states, covs, p_Ks = _vmap_lanes(lanes.states, J, VK, start_unit, keys, steps=steps)

    n = lanes.n_units
    next_unit = (lanes.next_unit + steps) % n if n else 0
    return lanes.replace(states=states, next_unit=next_unit), covs, p_Ks


def estimate_gradient(params, lanes: ChainLaneSet, emp: EmpiricalStatistics, gibbs_steps: int, key, parallel="vmap"):
    """
    stochastic estimate of the log-likelihood gradient at params

    map: each lane advances gibbs_steps and computes its statistics
    reduce: model statistics = mean over lanes

    returns (gradient [n²+n+1], updated lanes). the gradient is
    [vec(emp_cov - model_cov), emp_p_K - model_p_K]; the updated lanes must be
    passed to the next call
    """
    lanes, covs, p_Ks = advance_lanes(lanes, params, gibbs_steps, key, parallel=parallel)
    model_cov = jnp.mean(covs, axis=0)
    model_p_K = jnp.mean(p_Ks, axis=0)
    grad = jnp.concatenate([jnp.ravel(emp.cov - model_cov), emp.p_K - model_p_K])
    return grad, lanes


# make train state for JAX/Flax
def make_train_state(n_units: int, params, learning_rate: float):
    model = KPairwiseEBM(n_units=n_units)
    # plain fixed-step gradient descent: no momentum, no decay
    tx = optax.sgd(learning_rate)
    return TrainState.create(apply_fn=model.apply, params=params, tx=tx)


class KPairwiseTrainer:
    """
    stage machine: UNINITIALIZED -> BURNED_IN -> TRAINING -> DONE

    burn_in() seeds the lanes from data and runs burn_in_factor x gibbs_steps
    updates under the initial parameters; step() runs one gradient iteration;
    finish() returns (J, VK). run() does all of it.

    params are only read while lanes advance and only written between
    iterations. nothing is caught or retried: NaN/Inf from extreme parameters
    flows into the returned arrays
    """

    def __init__(self, data, J0, VK0, options=None, n_lanes: int = 1, parallel: str = "vmap",
                 log_every: int = 0, metrics_csv=None):
        if options is None:
            options = FitOptions()
        elif isinstance(options, dict):
            options = FitOptions.from_dict(options)
        data, J0, VK0 = validate_parameters(data, J0, VK0)
        if n_lanes < 1:
            raise ConfigurationError(f"n_lanes must be >= 1, got {n_lanes}")
        if options.samples_per_gradient_estimate < n_lanes:
            raise ConfigurationError(
                f"samples_per_gradient_estimate={options.samples_per_gradient_estimate} is smaller than n_lanes={n_lanes}"
            )
        if parallel not in PARALLEL_MODES:
            raise ConfigurationError(f"parallel must be one of {PARALLEL_MODES}, got {parallel!r}")

        self.options = options
        self.n_lanes = n_lanes
        self.parallel = parallel
        self.log_every = log_every
        self.metrics_csv = metrics_csv

        self.data = jnp.asarray(data)
        self.n_units = data.shape[1]
        self.emp = empirical_statistics(self.data)
        self.state = make_train_state(self.n_units, {'J': jnp.asarray(J0), 'VK': jnp.asarray(VK0)},
                                      options.learning_rate)
        self.rng = jax.random.PRNGKey(options.seed)
        self.lanes = None
        self.iteration = 0
        self.last_gradient = None
        self.stage = Stage.UNINITIALIZED

    @property
    def params(self):
        return self.state.params

    def burn_in(self) -> ChainLaneSet:
        if self.stage is not Stage.UNINITIALIZED:
            raise RuntimeError(f"burn_in() called in stage {self.stage.value}")
        self.rng, init_rng, burn_rng = jax.random.split(self.rng, 3)
        lanes = init_lanes(self.data, self.options.samples_per_gradient_estimate, self.n_lanes, init_rng)
        self.lanes, _, _ = advance_lanes(lanes, self.state.params, self.options.burn_in_steps, burn_rng,
                                         parallel=self.parallel)
        self.stage = Stage.BURNED_IN
        return self.lanes

    def step(self):
        """one iteration: estimate the gradient on the lanes, then update params"""
        if self.stage not in (Stage.BURNED_IN, Stage.TRAINING):
            raise RuntimeError(f"step() called in stage {self.stage.value}")
        if self.iteration >= self.options.iterations:
            raise RuntimeError(f"all {self.options.iterations} iterations already ran")
        self.stage = Stage.TRAINING
        start = time.time()

        self.rng, step_rng = jax.random.split(self.rng)
        grad, self.lanes = estimate_gradient(
            self.state.params, self.lanes, self.emp,
            self.options.gibbs_steps_per_iteration, step_rng, parallel=self.parallel,
        )
        # emp - model is the gradient of -log L under P ∝ exp(-E); sgd steps against it
        self.state = self.state.apply_gradients(grads=vector_to_params(grad, self.n_units))
        self.iteration += 1
        self.last_gradient = grad

        if self.metrics_csv is not None or self._should_log():
            cov_rmse, pk_l1 = gradient_errors(grad, self.n_units)
            elapsed = time.time() - start
            if self.metrics_csv is not None:
                append_metrics_csv(self.metrics_csv, self.iteration, cov_rmse, pk_l1, elapsed)
            if self._should_log():
                print(f"[Iter {self.iteration}/{self.options.iterations}] "
                      f"cov_rmse={cov_rmse:.6f} | pk_l1={pk_l1:.4f} | time={elapsed:.3f}s")
        return grad

    def _should_log(self):
        if not self.log_every:
            return False
        return self.iteration % self.log_every == 0 or self.iteration == self.options.iterations

    def finish(self):
        """split the final parameters into J [n,n] and VK [n+1]"""
        if self.stage is Stage.UNINITIALIZED:
            raise RuntimeError("finish() called before burn_in()")
        self.stage = Stage.DONE
        params = jax.device_get(self.state.params)
        return np.asarray(params['J']), np.asarray(params['VK'])

    def run(self):
        if self.stage is Stage.UNINITIALIZED:
            self.burn_in()
        while self.iteration < self.options.iterations:
            self.step()
        return self.finish()

    def model_statistics(self):
        """(cov, p_K) of the current chains, pooled over all lanes"""
        if self.lanes is None:
            raise RuntimeError("no chains before burn_in()")
        return statistics(self.lanes.states.reshape(-1, self.n_units))

    def state_dict(self):
        return {
            'iteration': self.iteration,
            'stage': self.stage.value,
            'params': jax.device_get(self.state.params),
            'opt_state': jax.device_get(self.state.opt_state),
            'lanes': None if self.lanes is None else np.asarray(self.lanes.states),
            'next_unit': None if self.lanes is None else self.lanes.next_unit,
            'rng': np.asarray(self.rng),
            'config': {
                **self.options.to_dict(),
                'n_units': self.n_units,
                'n_lanes': self.n_lanes,
                'parallel': self.parallel,
            },
        }

    def load_state_dict(self, ckpt):
        """
        restore a state_dict() snapshot taken from a trainer on the same data and lanes

        only the iteration budget may differ from the snapshot; any other
        option change would continue one run's chains under another run's settings
        """
        config = ckpt['config']
        if config['n_units'] != self.n_units:
            raise ConfigurationError(f"checkpoint has {config['n_units']} units, data has {self.n_units}")
        current = self.options.to_dict()
        changed = [k for k in RESUME_LOCKED_OPTIONS if k in config and config[k] != current[k]]
        if changed:
            diffs = ", ".join(f"{k}: {config[k]!r} -> {current[k]!r}" for k in changed)
            raise ConfigurationError(f"cannot resume with changed options ({diffs})")
        lanes = ckpt['lanes']
        if lanes is not None:
            if lanes.shape[0] != self.n_lanes:
                raise ConfigurationError(f"checkpoint has {lanes.shape[0]} lanes, trainer has {self.n_lanes}")
            lane_size = self.options.samples_per_gradient_estimate // self.n_lanes
            if lanes.shape[1] != lane_size:
                raise ConfigurationError(f"checkpoint lanes hold {lanes.shape[1]} chains, options need {lane_size}")
        params = jax.tree_util.tree_map(jnp.asarray, ckpt['params'])
        self.state = self.state.replace(params=params, opt_state=ckpt['opt_state'])
        self.lanes = None if lanes is None else ChainLaneSet(states=jnp.asarray(lanes), next_unit=ckpt['next_unit'])
        self.rng = jnp.asarray(ckpt['rng'])
        self.iteration = ckpt['iteration']
        self.stage = Stage(ckpt['stage'])


def fit_kpairwise(data, J0, VK0, options=None, n_lanes=None, parallel="vmap", log_every=0):
    """
    fit a K-pairwise model to binary data

    args:
        data: [M0, n] binary matrix
        J0: [n, n] initial couplings (keep symmetric)
        VK0: [n+1] initial population-count potential
        options: FitOptions or dict of options
        n_lanes: parallel chain lanes; None asks the environment (one per device)

    returns:
        (J [n, n], VK [n+1]) as numpy arrays
    """
    if n_lanes is None:
        n_lanes = default_num_lanes()
    trainer = KPairwiseTrainer(data, J0, VK0, options, n_lanes=n_lanes, parallel=parallel, log_every=log_every)
    return trainer.run()


def _load_init(path):
    with open(path, 'rb') as f:
        ckpt = pickle.load(f)
    J0 = np.asarray(ckpt['J'], dtype=np.float32)
    VK0 = np.asarray(ckpt['VK'], dtype=np.float32)
    print(f"initial parameters loaded from {path}")
    return J0, VK0


# full training run from preprocessed artifacts
def train_from_artifacts(artifacts_dir, run_dir, options: FitOptions, n_lanes=None, parallel="vmap",
                         checkpoint_every=50, log_every=10, init=None):
    """
    fit a K-pairwise model to a preprocessed spike raster

    resumes from run_dir/checkpoint_latest.pkl if present; writes
    metrics.csv, fit_metrics.json and model_checkpoint.pkl into run_dir
    """
    from kpairwise.data.preprocess import load_artifacts

    print("\nFitting K-pairwise model")
    print("=" * 60)

    configure_jax()

    run_dir = Path(run_dir)
    run_dir.mkdir(parents=True, exist_ok=True)

    X, meta = load_artifacts(artifacts_dir)
    n_units = X.shape[1]
    print(f"Dataset: {X.shape[0]} samples, {n_units} units")

    if init is not None:
        J0, VK0 = _load_init(init)
    else:
        J0 = np.zeros((n_units, n_units), dtype=np.float32)
        VK0 = np.zeros(n_units + 1, dtype=np.float32)

    if n_lanes is None:
        n_lanes = default_num_lanes()
    print(f"Lanes: {n_lanes} ({parallel})")

    trainer = KPairwiseTrainer(X, J0, VK0, options, n_lanes=n_lanes, parallel=parallel, log_every=log_every)

    # check for existing checkpoint to resume
    checkpoint_path = run_dir / "checkpoint_latest.pkl"
    csv_path = run_dir / "metrics.csv"
    ckpt = None
    if checkpoint_path.exists():
        print(f"found checkpoint at {checkpoint_path}, resuming...")
        try:
            with open(checkpoint_path, 'rb') as f:
                ckpt = pickle.load(f)
        except (EOFError, pickle.UnpicklingError) as e:
            print(f"  checkpoint corrupted ({e}), starting fresh")
            checkpoint_path.unlink()
            ckpt = None

    if ckpt is not None:
        trainer.load_state_dict(ckpt)
        print(f"resuming from iteration {trainer.iteration}/{options.iterations}")
        if csv_path.exists():
            # drop rows logged after the checkpoint; those iterations run again
            truncate_metrics_csv(csv_path, trainer.iteration)
        else:
            init_metrics_csv(run_dir)
    else:
        init_metrics_csv(run_dir)
    trainer.metrics_csv = csv_path

    if trainer.stage is Stage.UNINITIALIZED:
        print(f"Burn-in: {options.burn_in_steps} Gibbs steps on {options.samples_per_gradient_estimate} chains")
        trainer.burn_in()

    print(f"\nStarting training for {options.iterations} iterations...")
    print("=" * 60)
    while trainer.iteration < options.iterations:
        trainer.step()
        if checkpoint_every and trainer.iteration % checkpoint_every == 0:
            with open(checkpoint_path, 'wb') as f:
                pickle.dump(trainer.state_dict(), f)

    J, VK = trainer.finish()

    model_cov, model_p_K = trainer.model_statistics()
    residual = np.concatenate([
        np.ravel(np.asarray(trainer.emp.cov - model_cov)),
        np.asarray(trainer.emp.p_K - model_p_K),
    ])
    cov_rmse, pk_l1 = gradient_errors(residual, n_units)
    save_fit_metrics(run_dir, cov_rmse, pk_l1, trainer.iteration)
    print(f"\nFinal: cov_rmse={cov_rmse:.6f} | pk_l1={pk_l1:.4f}")

    checkpoint = {
        'J': J,
        'VK': VK,
        'emp_cov': np.asarray(trainer.emp.cov),
        'emp_p_K': np.asarray(trainer.emp.p_K),
        'model_cov': np.asarray(model_cov),
        'model_p_K': np.asarray(model_p_K),
        'meta': meta,
        'config': trainer.state_dict()['config'],
    }
    with open(run_dir / "model_checkpoint.pkl", 'wb') as f:
        pickle.dump(checkpoint, f)

    print(f"K-pairwise fit complete, results saved to {run_dir}")
    return J, VK


def main(argv=None):
    import argparse
    ap = argparse.ArgumentParser(description="fit a K-pairwise maximum-entropy model to binary spike data")
    ap.add_argument("--artifacts", required=True,
                    help="path to preprocessed artifacts directory (eg artifacts/retina)")
    ap.add_argument("--run_dir", required=True,
                    help="output directory for this run (eg runs/retina_kpairwise)")
    ap.add_argument("--lr", type=float, default=0.05,
                    help="learning rate")
    ap.add_argument("--iterations", type=int, default=200,
                    help="number of gradient iterations")
    ap.add_argument("--samples", type=int, default=1000,
                    help="number of persistent chains used per gradient estimate")
    ap.add_argument("--gibbs_steps", type=int, default=10,
                    help="single-unit Gibbs updates per chain per iteration")
    ap.add_argument("--burn_in_factor", type=int, default=10,
                    help="burn-in length as a multiple of --gibbs_steps (>= 10)")
    ap.add_argument("--seed", type=int, default=42,
                    help="PRNG seed")
    ap.add_argument("--lanes", type=int, default=None,
                    help="parallel chain lanes (default: one per JAX device)")
    ap.add_argument("--parallel", choices=list(PARALLEL_MODES), default="vmap",
                    help="vmap: all lanes on one device, pmap: one lane per device")
    ap.add_argument("--checkpoint_every", type=int, default=50,
                    help="save a resumable checkpoint every N iterations (0 disables)")
    ap.add_argument("--log_every", type=int, default=10,
                    help="print progress every N iterations (0 disables)")
    ap.add_argument("--init", default=None,
                    help="model_checkpoint.pkl to start from instead of zeros")
    args = ap.parse_args(argv)

    report_devices()

    options = FitOptions(
        learning_rate=args.lr,
        iterations=args.iterations,
        samples_per_gradient_estimate=args.samples,
        gibbs_steps_per_iteration=args.gibbs_steps,
        burn_in_factor=args.burn_in_factor,
        seed=args.seed,
    )
    train_from_artifacts(
        artifacts_dir=args.artifacts,
        run_dir=args.run_dir,
        options=options,
        n_lanes=args.lanes,
        parallel=args.parallel,
        checkpoint_every=args.checkpoint_every,
        log_every=args.log_every,
        init=args.init,
    )


if __name__ == "__main__":
    main()
