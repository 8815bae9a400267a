"""
Compares empirical and model population-count distributions p(K)

Reads model_checkpoint.pkl of each fitted run and shows bars of the data
p(K) next to the p(K) of the final persistent chains, plus a scatter of
empirical vs model co-activation rates
"""

import argparse, pickle
import numpy as np
import matplotlib.pyplot as plt
from pathlib import Path

def load_checkpoint(run_dir: Path):
    path = run_dir / "model_checkpoint.pkl"
    if not path.exists():
        return None
    with path.open("rb") as f:
        return pickle.load(f)

def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument("--run_dir", required=True, type=str)
    ap.add_argument("--outdir", default="reports/figures", type=str)
    args = ap.parse_args(argv)

    outdir = Path(args.outdir); outdir.mkdir(parents=True, exist_ok=True)
    run_dir = Path(args.run_dir)
    ckpt = load_checkpoint(run_dir)
    if ckpt is None:
        print(f"No model_checkpoint.pkl in {run_dir}.")
        return

    emp_p_K = np.asarray(ckpt["emp_p_K"])
    model_p_K = np.asarray(ckpt["model_p_K"])
    K = np.arange(len(emp_p_K))

    fig, axes = plt.subplots(1, 2, figsize=(11,4.5))

    width = 0.4
    axes[0].bar(K - width/2, emp_p_K, width=width, label="data")
    axes[0].bar(K + width/2, model_p_K, width=width, label="model")
    axes[0].set_yscale("log")
    axes[0].set_xlabel("Population count K")
    axes[0].set_ylabel("p(K)")
    axes[0].legend(frameon=False)
    axes[0].grid(axis="y", alpha=0.2)

    # off-diagonal co-activation rates only
    emp_cov = np.asarray(ckpt["emp_cov"])
    model_cov = np.asarray(ckpt["model_cov"])
    iu = np.triu_indices_from(emp_cov, k=1)
    axes[1].scatter(emp_cov[iu], model_cov[iu], s=8, alpha=0.6)
    lim = max(emp_cov[iu].max(initial=0), model_cov[iu].max(initial=0)) * 1.05 or 1.0
    axes[1].plot([0, lim], [0, lim], "k--", linewidth=1)
    axes[1].set_xlabel("data <s_i s_j>")
    axes[1].set_ylabel("model <s_i s_j>")
    axes[1].grid(alpha=0.2)

    fig.suptitle(f"K-pairwise fit: {run_dir.name}")
    plt.tight_layout()
    out = outdir / f"population_count_fit_{run_dir.name}.png"
    plt.savefig(out, dpi=180)
    print(f"Saved {out}")

if __name__ == "__main__":
    main()
