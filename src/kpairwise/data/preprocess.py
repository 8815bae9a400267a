"""
Data preprocessing pipeline for population recordings

Converts spike times or spike-count rasters to binary activity matrices
(time bins x units) ready for K-pairwise fitting

Handles binning, binarization and selection of the most active units
"""
import argparse, json
import numpy as np
import torch

from pathlib import Path


# bin spike times into a count raster
def bin_spike_trains(times, units, n_units, bin_width, t_start=None, t_stop=None):
    """
    count spikes per (time bin, unit)

    times[i] is the time of the i-th spike and units[i] the unit that fired it;
    bins are [t_start + k*bin_width, t_start + (k+1)*bin_width), spikes
    outside [t_start, t_stop) are ignored
    """
    times = np.asarray(times, dtype=np.float64)
    units = np.asarray(units, dtype=np.int64)
    if times.shape != units.shape:
        raise ValueError(f"times and units must have the same shape, got {times.shape} and {units.shape}")
    if bin_width <= 0:
        raise ValueError(f"bin_width must be > 0, got {bin_width}")
    if units.size and (units.min() < 0 or units.max() >= n_units):
        raise ValueError(f"unit ids must lie in [0, {n_units})")
    if t_start is None:
        t_start = float(times.min()) if times.size else 0.0
    if t_stop is None:
        t_stop = float(times.max()) + bin_width if times.size else t_start

    n_bins = int(np.ceil((t_stop - t_start) / bin_width))
    counts = np.zeros((max(n_bins, 0), n_units), dtype=np.int32)
    bins = np.floor((times - t_start) / bin_width).astype(np.int64)
    keep = (times >= t_start) & (times < t_stop) & (bins < n_bins)
    np.add.at(counts, (bins[keep], units[keep]), 1)
    return counts


# binarize for K-pairwise model
def binarize(counts, threshold=0):
    """1 where the count exceeds threshold (a unit is active in that bin), else 0"""
    return (np.asarray(counts) > threshold).astype(np.int8)


# keep the most active units
def select_most_active(X, max_units):
    """return (X restricted to the max_units most active columns, kept column ids in original order)"""
    X = np.asarray(X)
    if max_units is None or X.shape[1] <= max_units:
        return X, np.arange(X.shape[1])
    rate = X.mean(axis=0)
    keep = np.sort(np.argsort(rate, kind="stable")[-max_units:])
    return X[:, keep], keep


def save_artifacts(outdir, X, meta=None):
    """write tensors.pt (binary int8 raster) and preprocess_meta.json"""
    out = Path(outdir)
    out.mkdir(parents=True, exist_ok=True)
    X = np.ascontiguousarray(X, dtype=np.int8)
    torch.save({"X": torch.from_numpy(X), "dtype": "int8"}, out / "tensors.pt")
    meta = dict(meta or {})
    meta.update({"n_samples": int(X.shape[0]), "n_units": int(X.shape[1])})
    (out / "preprocess_meta.json").write_text(json.dumps(meta, indent=2))
    return out


def load_artifacts(artifacts_dir):
    """read back (X as int8 numpy [samples, units], meta dict)"""
    artifacts_dir = Path(artifacts_dir)
    tensors = torch.load(artifacts_dir / "tensors.pt")
    X = tensors["X"].numpy().astype(np.int8)
    meta_path = artifacts_dir / "preprocess_meta.json"
    meta = json.loads(meta_path.read_text()) if meta_path.exists() else {}
    return X, meta


# main function
def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument("--input", required=True)                   # raster.npy or spikes.npz (times, units)
    ap.add_argument("--outdir", required=True)                  # artifacts/retina
    ap.add_argument("--bin_width", type=float, default=0.02)    # seconds, for spike times
    ap.add_argument("--threshold", type=int, default=0)         # active if count > threshold
    ap.add_argument("--max_units", type=int, default=None)
    args = ap.parse_args(argv)

    path = Path(args.input)
    meta = {"source": str(path), "threshold": args.threshold}

    # 1) counts per (bin, unit)
    if path.suffix == ".npz":
        spikes = np.load(path)
        times, units = spikes["times"], spikes["units"]
        n_units = int(spikes["n_units"]) if "n_units" in spikes.files else int(units.max()) + 1
        counts = bin_spike_trains(times, units, n_units, args.bin_width)
        meta["bin_width"] = args.bin_width
    else:
        counts = np.load(path)
        if counts.ndim != 2:
            raise ValueError(f"raster must be 2-D (bins x units), got shape {counts.shape}")

    # 2) binarize
    X = binarize(counts, threshold=args.threshold)

    # 3) optionally keep only the most active units
    X, kept = select_most_active(X, args.max_units)
    meta["units"] = kept.tolist()

    out = save_artifacts(args.outdir, X, meta)
    print(f"✔ Preprocessed → {out} | shape: {X.shape} | mean activity={X.mean():.4f}")


if __name__ == "__main__":
    main()
