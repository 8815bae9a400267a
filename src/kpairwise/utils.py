"""
utility functions for training runs

includes JAX device discovery (which sets the number of parallel chain
lanes), metrics tracking, and fit summaries
"""
import os, csv, json
from pathlib import Path

import numpy as np
import jax


METRIC_FIELDS = ["iteration", "cov_rmse", "pk_l1", "wall_clock_s"]


# device detection and configuration
def configure_jax():
    """configure JAX to not grab all accelerator memory up front"""
    # prevent JAX from pre-allocating all GPU memory
    os.environ.setdefault('XLA_PYTHON_CLIENT_PREALLOCATE', 'false')
    os.environ.setdefault('XLA_PYTHON_CLIENT_ALLOCATOR', 'platform')


def report_devices():
    """print the JAX devices available to this process and return how many there are"""
    devices = jax.local_devices()
    print("=" * 60)
    print("DEVICES")
    print("=" * 60)
    print(f"backend: {jax.default_backend()}")
    for d in devices:
        print(f"  {d}")
    print("=" * 60)
    return len(devices)


def default_num_lanes():
    """number of parallel chain lanes the environment provides (one per local device)"""
    return max(jax.local_device_count(), 1)


# helper: summarize a gradient estimate
def gradient_errors(grad, n_units: int):
    """
    split a gradient vector into a covariance RMSE and a p_K L1 error

    both are zero when the model statistics match the data exactly
    """
    grad = np.asarray(grad)
    cov_part = grad[:n_units * n_units]
    pk_part = grad[n_units * n_units:]
    cov_rmse = float(np.sqrt(np.mean(cov_part ** 2))) if cov_part.size else 0.0
    pk_l1 = float(np.sum(np.abs(pk_part)))
    return cov_rmse, pk_l1


# helper: write metrics to CSV
def init_metrics_csv(run_dir: Path):
    """initialize metrics CSV with headers"""
    csv_path = Path(run_dir) / "metrics.csv"
    with csv_path.open('w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=METRIC_FIELDS)
        writer.writeheader()
    return csv_path


def append_metrics_csv(csv_path: Path, iteration: int, cov_rmse: float, pk_l1: float, wall_clock_s: float):
    """append one iteration's metrics to CSV"""
    with Path(csv_path).open('a', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=METRIC_FIELDS)
        writer.writerow({
            "iteration": iteration,
            "cov_rmse": cov_rmse,
            "pk_l1": pk_l1,
            "wall_clock_s": wall_clock_s,
        })


def truncate_metrics_csv(csv_path: Path, last_iteration: int):
    """keep only the rows up to last_iteration (a resumed run logs the later ones again)"""
    csv_path = Path(csv_path)
    with csv_path.open(newline='') as f:
        rows = [r for r in csv.DictReader(f) if int(float(r["iteration"])) <= last_iteration]
    with csv_path.open('w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=METRIC_FIELDS)
        writer.writeheader()
        writer.writerows(rows)
    return csv_path


def save_fit_metrics(run_dir: Path, cov_rmse: float, pk_l1: float, iterations: int):
    """save final fit quality to JSON"""
    path = Path(run_dir) / "fit_metrics.json"
    path.write_text(json.dumps({
        "cov_rmse": float(cov_rmse),
        "pk_l1": float(pk_l1),
        "iterations": int(iterations),
    }, indent=2))
    return path
