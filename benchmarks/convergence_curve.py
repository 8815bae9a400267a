"""
Visualizes training convergence of K-pairwise fits.

Plots the covariance RMSE or the p(K) L1 error of each iteration's gradient
estimate for multiple runs, to compare learning rates and Gibbs step counts
"""

import argparse, csv, json
import numpy as np
import matplotlib.pyplot as plt
from pathlib import Path

from kpairwise.utils import METRIC_FIELDS

def load_metrics_csv(path: Path):
    """metrics.csv as {column: array}, sorted by iteration; empty columns if the run has no rows yet"""
    columns = {k: [] for k in METRIC_FIELDS}
    with path.open(newline="") as f:
        for row in csv.DictReader(f):
            columns["iteration"].append(int(float(row["iteration"])))
            for k in METRIC_FIELDS[1:]:
                v = row.get(k)
                columns[k].append(float(v) if v not in ("", None) else np.nan)
    order = np.argsort(columns["iteration"], kind="stable")
    return {k: np.asarray(v)[order] for k, v in columns.items()}

def discover_runs(runs_dir: Path):
    """yield (label, metrics) per run dir; finished runs get their final error in the label"""
    for d in sorted(p for p in runs_dir.iterdir() if p.is_dir()):
        metrics = d / "metrics.csv"
        if not metrics.exists():
            continue
        label = d.name
        fit_path = d / "fit_metrics.json"
        if fit_path.exists():
            fit = json.loads(fit_path.read_text())
            label += f" (final cov_rmse={fit['cov_rmse']:.2e})"
        yield label, load_metrics_csv(metrics)

def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument("--runs", default="runs", type=str)
    ap.add_argument("--outdir", default="reports/figures", type=str)
    ap.add_argument("--metric", choices=["cov", "pk"], default="cov",
                    help="What to plot on Y-axis.")
    args = ap.parse_args(argv)

    outdir = Path(args.outdir); outdir.mkdir(parents=True, exist_ok=True)
    runs = list(discover_runs(Path(args.runs)))
    if not runs:
        print("No runs with metrics.csv found.")
        return

    if args.metric == "cov":
        key, ylabel = "cov_rmse", "Covariance RMSE ↓"
    else:
        key, ylabel = "pk_l1", "p(K) L1 error ↓"

    plt.figure(figsize=(7,5))
    for label, m in runs:
        if not len(m["iteration"]):
            continue
        plt.plot(m["iteration"], m[key], linewidth=1.2, label=label)

    plt.xlabel("Iteration")
    plt.ylabel(ylabel)
    plt.yscale("log")
    plt.title("Training Convergence")
    plt.legend(frameon=False)
    plt.grid(alpha=0.2)
    plt.tight_layout()
    out = outdir / f"convergence_{args.metric}.png"
    plt.savefig(out, dpi=180)
    print(f"Saved {out}")

if __name__ == "__main__":
    main()
