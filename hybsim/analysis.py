"""
analysis.py — Plots from a finished CT-HYB run
==============================================

Generates:
  - Acceptance rate bar plot (per update type + overall)
  - G(tau) per orbital, with error bars
  - Expansion-order histograms per orbital

Usage:
    hybsim analyze --results run/ [--output plots/]
"""

import json
import logging
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from .params import results_file_name
from .state import UPDATE_LABELS, MoveType

logger = logging.getLogger("hybsim.analysis")


# ============================================================
# Load results
# ============================================================
def load_results(results_dir, output_file: str = None) -> dict:
    """Load observables from the npz file of a run directory."""
    results_dir = Path(results_dir)
    if output_file is None:
        candidates = sorted(results_dir.glob("*.npz"))
        if not candidates:
            raise FileNotFoundError(f"no results file (*.npz) in {results_dir}")
        path = candidates[0]
    else:
        path = results_dir / results_file_name(output_file)
        if not path.exists():
            raise FileNotFoundError(f"results file not found: {path}")
    with np.load(path) as data:
        return {key: data[key] for key in data.files}


def load_summary(results_dir) -> dict:
    path = Path(results_dir) / "results.json"
    if not path.exists():
        return {}
    with open(path) as f:
        return json.load(f)


def compute_acceptance_rates(data: dict) -> dict:
    """Per-update and overall acceptance rates from the stored counters."""
    nacc = np.asarray(data["nacc"])
    nprop = np.asarray(data["nprop"])
    rates = {}
    for move in MoveType:
        att = int(nprop[move])
        acc = int(nacc[move])
        rates[move.label] = {
            "attempts": att,
            "accepted": acc,
            "rate": acc / att if att > 0 else 0.0,
        }
    total = int(nprop.sum())
    rates["overall"] = {
        "attempts": total,
        "accepted": int(nacc.sum()),
        "rate": int(nacc.sum()) / total if total > 0 else 0.0,
    }
    return rates


# ============================================================
# Plotting functions
# ============================================================
def plot_acceptance_rates(rates: dict, output_dir: Path) -> Path:
    """Bar plot of per-update acceptance rates."""
    labels = [UPDATE_LABELS[m] for m in MoveType]
    values = [rates[label]["rate"] for label in labels]

    fig, ax = plt.subplots(figsize=(10, 5))
    colors = plt.cm.viridis(np.linspace(0.2, 0.8, len(labels)))
    ax.bar(labels, values, color=colors, edgecolor="black", alpha=0.8)
    ax.axhline(y=rates["overall"]["rate"], color="red", linestyle="--",
               linewidth=2, label=f'Overall: {rates["overall"]["rate"]:.1%}')

    ax.set_xlabel("Update type", fontsize=12)
    ax.set_ylabel("Acceptance rate", fontsize=12)
    ax.set_title("CT-HYB Acceptance Rates", fontsize=14)
    ax.set_ylim(0, 1)
    ax.legend(fontsize=10)
    ax.tick_params(axis="x", rotation=30)
    plt.tight_layout()
    path = output_dir / "acceptance_rates.png"
    plt.savefig(path, dpi=150)
    plt.close()
    return path


def plot_green_tau(data: dict, output_dir: Path) -> Path:
    """G(tau) of every orbital."""
    g = np.asarray(data["G_tau"])
    err = np.asarray(data.get("G_tau_error", np.zeros_like(g)))
    beta = float(data["beta"])
    tau = np.linspace(0.0, beta, g.shape[1])

    fig, ax = plt.subplots(figsize=(8, 5))
    for o in range(g.shape[0]):
        ax.errorbar(tau, g[o], yerr=err[o], label=f"orbital {o}",
                    linewidth=1, capsize=0)
    ax.set_xlabel(r"$\tau$", fontsize=12)
    ax.set_ylabel(r"$G(\tau)$", fontsize=12)
    ax.set_title(rf"Imaginary-time Green's function ($\beta$ = {beta:g})", fontsize=14)
    ax.set_xlim(0, beta)
    ax.legend(fontsize=9)
    plt.tight_layout()
    path = output_dir / "G_tau.png"
    plt.savefig(path, dpi=150)
    plt.close()
    return path


def plot_order_histogram(data: dict, output_dir: Path) -> Path:
    """Probability of each expansion order, per orbital."""
    hist = np.asarray(data["order_histogram"])
    # cut the empty high-order tail
    nonzero = np.nonzero(hist.sum(axis=0))[0]
    max_order = int(nonzero[-1]) + 1 if nonzero.size else 1
    orders = np.arange(max_order)

    fig, ax = plt.subplots(figsize=(8, 5))
    for o in range(hist.shape[0]):
        ax.plot(orders, hist[o, :max_order], marker="o", markersize=3,
                label=f"orbital {o}")
    ax.set_xlabel("Expansion order k", fontsize=12)
    ax.set_ylabel("P(k)", fontsize=12)
    ax.set_title("Expansion-order histogram", fontsize=14)
    ax.legend(fontsize=9)
    plt.tight_layout()
    path = output_dir / "order_histogram.png"
    plt.savefig(path, dpi=150)
    plt.close()
    return path


def analyze(results_dir, output_dir=None, output_file: str = None) -> list[Path]:
    """Make every plot the stored observables allow; returns the files written."""
    results_dir = Path(results_dir)
    output_dir = Path(output_dir) if output_dir is not None else results_dir / "plots"
    output_dir.mkdir(parents=True, exist_ok=True)
    data = load_results(results_dir, output_file)

    written = []
    rates = compute_acceptance_rates(data)
    written.append(plot_acceptance_rates(rates, output_dir))
    for label, entry in rates.items():
        logger.info(f"  {label:<22s} {entry['rate']:>6.1%} "
                    f"({entry['accepted']}/{entry['attempts']})")
    if "order_histogram" in data:
        written.append(plot_order_histogram(data, output_dir))
    if "G_tau" in data:
        written.append(plot_green_tau(data, output_dir))
    else:
        logger.info("No G_tau in results (MEASURE_time off), skipping G(tau) plot")

    summary = load_summary(results_dir)
    if summary:
        logger.info(f"Average sign: {summary.get('Sign', float('nan')):.6f} "
                    f"over {summary.get('measurements', 0)} measurements")
    logger.info(f"Plots written to {output_dir}")
    return written
