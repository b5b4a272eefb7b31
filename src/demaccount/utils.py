#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/utils.py

"""
Plotting and reporting utilities for account-sampler runs.

The functions here take a CombinedRunResult (and optionally the
CombinedAccount it came from) and produce trace plots or a compact printed
report, so notebooks stay minimal. Figures are written under
`<base_dir>/<label>/` when a run label is given.
"""

from __future__ import annotations

import os
from typing import Any, Optional

import numpy as np
import matplotlib.pyplot as plt

from .combined import CombinedAccount, CombinedRunResult

Array = np.ndarray

__all__ = [
    "ensure_images_dir",
    "plot_traces",
    "plot_population_paths",
    "print_run_report",
]

_KEY_WIDTH = 24


# =============================================================================
# Small helpers
# =============================================================================
def ensure_images_dir(label: str, *, base_dir: str = "./images") -> str:
    """Create `<base_dir>/<label>` if needed and return it."""
    if not str(label):
        raise ValueError("Run label must be a non-empty string.")
    images_dir = os.path.join(base_dir, str(label))
    os.makedirs(images_dir, exist_ok=True)
    return images_dir


def _save(fig: plt.Figure, label: Optional[str], base_dir: str, filename: str) -> Optional[str]:
    """Save fig under the run's image directory; no-op without a label."""
    if label is None:
        return None
    path = os.path.join(ensure_images_dir(label, base_dir=base_dir), filename)
    fig.savefig(path, dpi=300)
    return path


# =============================================================================
# Trace plots
# =============================================================================
def plot_traces(
    result: CombinedRunResult,
    *,
    label: Optional[str] = None,
    base_dir: str = "./images",
    show: bool = True,
) -> plt.Figure:
    """
    Plot log-likelihood, log-density and acceptance-rate traces.

    Parameters
    ----------
    result:
        Output of CombinedAccount.run().
    label:
        Run label; when given, the figure is saved as `traces.pdf` in
        `<base_dir>/<label>/`.
    show:
        Call plt.show() after drawing.
    """
    it = np.arange(1, result.n_iter + 1)
    fig, axes = plt.subplots(3, 1, figsize=(10, 8), dpi=150, sharex=True)
    series = [
        ("log-likelihood", result.log_likelihood, "tab:blue"),
        ("log-density", result.log_density, "tab:orange"),
        ("acceptance rate", result.acceptance_rate, "tab:green"),
    ]
    for ax, (name, values, color) in zip(axes, series):
        ax.plot(it, np.asarray(values, dtype=float), marker="o", markersize=3, linewidth=1.2, color=color)
        ax.set_ylabel(name)
        ax.grid(True, alpha=0.3)
    axes[-1].set_xlabel("iteration")
    axes[-1].set_ylim(0.0, 1.0)
    fig.tight_layout()
    _save(fig, label, base_dir, "traces.pdf")
    if show:
        plt.show()
    return fig


def plot_population_paths(
    combined: CombinedAccount,
    *,
    label: Optional[str] = None,
    base_dir: str = "./images",
    show: bool = True,
) -> plt.Figure:
    """
    Plot the population total by time point, next to the total of every component by period.
    """
    account = combined.account
    desc = account.population_description
    popn = np.moveaxis(desc.reshape(account.population), desc.pos_time, 0)
    totals = popn.reshape(desc.n_time, -1).sum(axis=1)

    fig, (ax_p, ax_c) = plt.subplots(1, 2, figsize=(12, 5), dpi=150)
    ax_p.plot(np.arange(desc.n_time), totals, marker="o", color="black")
    ax_p.set_title("population")
    ax_p.set_xlabel("time point")
    ax_p.grid(True, alpha=0.3)
    for comp in account.components:
        d = comp.description
        arr = np.moveaxis(d.reshape(comp.values), d.pos_time, 0).reshape(d.n_time, -1).sum(axis=1)
        ax_c.plot(np.arange(d.n_time), arr, marker="s", label=comp.name)
    ax_c.set_title("components")
    ax_c.set_xlabel("period")
    ax_c.grid(True, alpha=0.3)
    if account.components:
        ax_c.legend(frameon=False)
    fig.tight_layout()
    _save(fig, label, base_dir, "population_paths.pdf")
    if show:
        plt.show()
    return fig


# =============================================================================
# Pretty printing
# =============================================================================
def _line(key: str, value: Any) -> None:
    print(f"  {key.ljust(_KEY_WIDTH, '.')} {value}")


def print_run_report(result: CombinedRunResult, combined: Optional[CombinedAccount] = None) -> None:
    """
    Print a compact report of a sampler run.

    The report includes run length and acceptance, final log-likelihood and
    log-density, and, when the combined model is given, the account layout
    and an accounting-identity check.
    """
    rate = result.n_accepted / result.n_generated if result.n_generated else float("nan")
    ll = np.asarray(result.log_likelihood, dtype=float)

    print("\n" + "=" * 78)
    print("Demographic account sampler report")
    print("=" * 78)
    _line("iterations", result.n_iter)
    _line("account steps", result.n_steps)
    _line("proposals generated", result.n_generated)
    _line("accepted", result.n_accepted)
    _line("acceptance rate", f"{rate:.3f}")
    if ll.size:
        _line("final log-likelihood", f"{ll[-1]:.3f}")
        _line("final log-density", f"{result.log_density[-1]:.3f}")
        half = ll[ll.size // 2:]
        _line("mean loglik (2nd half)", f"{np.nanmean(half):.3f}")

    if combined is not None:
        account = combined.account
        print("-" * 78)
        print("Account")
        _line("population", account.population_description)
        for k, comp in enumerate(account.components, start=1):
            _line(f"[{k}] {comp.name}", f"{comp.role.value}, {comp.description}")
        _line("datasets", len(combined.datasets))
        _line("identity holds", account.is_consistent())
        _line("exposure current", combined.exposure_is_current())
    print("=" * 78 + "\n")
