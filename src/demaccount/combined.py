#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/combined.py

"""
Combined account model: account, system models and observation layer, and
the Metropolis-Hastings driver that updates them.

Step
----
One account step draws a proposal, scores its change in data log-likelihood
(early exit on -inf), scores its change in system-model log density, and
accepts when log(u) < dLogLik + dLogDens, in which case every linked cell is
committed together.

Outer iteration
---------------
update_combined runs, per iteration,

    update_account(n_steps) -> update_system_models()
    -> update_expected_exposure() -> update_data_models().

Expected exposure depends only on the population model's theta, so it is
recomputed after the system models move and kept as is during account steps.

Public API
----------
- UpdateSettings: sampler configuration
- AccountUpdateStats: counters of one update_account call
- CombinedRunResult: traces of run()
- CombinedAccount
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from . import commit, logdens, loglik, proposals
from .account import Account
from .description import DimKind
from .iterators import ComponentIterator, OrigDestIterator, PopulationIterator
from .models import NormalSystemModel, SystemModel
from .observation import DataModel, Transform
from .proposals import Proposal

Array = np.ndarray

logger = logging.getLogger(__name__)

__all__ = [
    "UpdateSettings",
    "AccountUpdateStats",
    "CombinedRunResult",
    "CombinedAccount",
]


# -----------------------------------------------------------------------------
# Configuration and results
# -----------------------------------------------------------------------------
@dataclass
class UpdateSettings:
    """
    Configuration of the account sampler.

    prob_popn:
        Probability that a step proposes a population move.
    prob_small_update:
        Probability that a births, orig-dest or ordinary step is a small
        update (only used when the account has age).
    comp_weights:
        Relative probabilities of choosing each component; uniform when None.
    max_attempt:
        Attempts allowed when drawing a cell or a truncated value.
    use_prior_popn:
        Whether the population model acts as a prior on population cohorts.
        When False, first-period population cells are distributed as their
        Poisson(theta) proposal and later cells are left to the data.
    n_steps_account:
        Account steps per outer iteration; defaults to the number of cells in
        the account.
    """
    prob_popn: float = 0.4
    prob_small_update: float = 0.0
    comp_weights: Optional[Sequence[float]] = None
    max_attempt: int = 20
    use_prior_popn: bool = True
    n_steps_account: Optional[int] = None

    def validate(self, n_components: int) -> None:
        """Validate settings against the number of components."""
        if not (0.0 <= float(self.prob_popn) <= 1.0):
            raise ValueError("prob_popn must lie in [0, 1].")
        if not (0.0 <= float(self.prob_small_update) <= 1.0):
            raise ValueError("prob_small_update must lie in [0, 1].")
        if int(self.max_attempt) < 1:
            raise ValueError("max_attempt must be at least 1.")
        if self.n_steps_account is not None and int(self.n_steps_account) < 1:
            raise ValueError("n_steps_account must be at least 1.")
        if self.comp_weights is not None:
            w = np.asarray(self.comp_weights, dtype=np.float64).reshape(-1)
            if w.size != n_components:
                raise ValueError(f"comp_weights has {w.size} entries, expected {n_components}.")
            if np.any(~np.isfinite(w)) or np.any(w < 0.0) or (n_components > 0 and w.sum() <= 0.0):
                raise ValueError("comp_weights must be finite, non-negative and not all zero.")

    def cum_prob_comp(self, n_components: int) -> Array:
        """Cumulative component-choice probabilities."""
        if n_components == 0:
            return np.zeros(0, dtype=np.float64)
        if self.comp_weights is None:
            w = np.ones(n_components, dtype=np.float64)
        else:
            w = np.asarray(self.comp_weights, dtype=np.float64).reshape(-1)
        cum = np.cumsum(w / w.sum())
        cum[-1] = 1.0
        return cum


@dataclass
class AccountUpdateStats:
    """Counters of one update_account call."""
    n_steps: int = 0
    n_generated: int = 0
    n_accepted: int = 0
    n_rejected_lik: int = 0

    @property
    def acceptance_rate(self) -> float:
        return self.n_accepted / self.n_generated if self.n_generated else float("nan")


@dataclass
class CombinedRunResult:
    """Per-iteration traces of CombinedAccount.run()."""
    log_likelihood: List[float] = field(default_factory=list)
    log_density: List[float] = field(default_factory=list)
    acceptance_rate: List[float] = field(default_factory=list)
    n_accepted: int = 0
    n_generated: int = 0
    n_steps: int = 0

    @property
    def n_iter(self) -> int:
        return len(self.log_likelihood)


# -----------------------------------------------------------------------------
# Combined model
# -----------------------------------------------------------------------------
class CombinedAccount:
    """
    Account plus system models plus observation layer.

    Parameters
    ----------
    account:
        The demographic account; owned and updated in place.
    system_models:
        One model per series: index 0 is the population model, index k the
        model of component k.
    data_models, datasets, transforms, series_indices:
        Parallel sequences describing the observation layer; series_indices[i]
        names the series (0 = population, k = component k) dataset i observes.
    settings:
        UpdateSettings; defaults when None.
    rng:
        Random generator; a fresh default_rng() when None.
    """

    def __init__(
        self,
        account: Account,
        system_models: Sequence[SystemModel],
        data_models: Sequence[DataModel] = (),
        datasets: Sequence[Array] = (),
        transforms: Sequence[Transform] = (),
        series_indices: Sequence[int] = (),
        *,
        settings: Optional[UpdateSettings] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        if rng is None:
            rng = np.random.default_rng()
        self.account = account
        self.rng = rng
        self.settings = settings if settings is not None else UpdateSettings()
        self.settings.validate(account.n_components)

        self.system_models: List[SystemModel] = list(system_models)
        self._validate_system_models()

        self.data_models: List[DataModel] = list(data_models)
        self.datasets: List[Array] = [np.asarray(d, dtype=np.float64).reshape(-1).copy() for d in datasets]
        self.transforms: List[Transform] = list(transforms)
        self.series_indices: List[int] = [int(i) for i in series_indices]
        self._validate_observation()
        self._datasets_by_series: Dict[int, List[int]] = {}
        for k, i_series in enumerate(self.series_indices):
            self._datasets_by_series.setdefault(i_series, []).append(k)

        desc = account.population_description
        self.iterator_popn = PopulationIterator(desc)
        self.iterator_acc = (
            PopulationIterator(account.accession_description, pin_last_age=False)
            if account.accession_description is not None
            else None
        )
        self.iterator_exposure = ComponentIterator(account.exposure_description)
        self.iterators_comp: List[ComponentIterator] = []
        for comp in account.components:
            d = comp.description
            if d.positions_of(DimKind.DESTINATION, DimKind.CHILD, DimKind.DIRECTION):
                self.iterators_comp.append(OrigDestIterator(d))
            else:
                self.iterators_comp.append(ComponentIterator(d))

        self.cum_prob_comp = self.settings.cum_prob_comp(account.n_components)
        self.exposure = account.exposure()
        self.expected_exposure = account.expected_exposure(self.system_models[0].theta)

    # ------------------------- validation -------------------------
    def _validate_system_models(self) -> None:
        account = self.account
        if len(self.system_models) != account.n_components + 1:
            raise ValueError(
                f"Expected {account.n_components + 1} system models (population first), got {len(self.system_models)}."
            )
        for k, model in enumerate(self.system_models):
            n = account.series(k).size
            if model.n_cells != n:
                raise ValueError(f"System model {k} has {model.n_cells} cells, series has {n}.")
        if self.system_models[0].uses_exposure:
            raise ValueError("The population model cannot use exposure.")
        for k, comp in enumerate(account.components, start=1):
            model = self.system_models[k]
            if comp.is_net and not isinstance(model, NormalSystemModel):
                raise ValueError(f"Net component '{comp.name}' requires a NormalSystemModel.")
            if not comp.is_net and isinstance(model, NormalSystemModel):
                raise ValueError(f"Count component '{comp.name}' cannot use a NormalSystemModel.")

    def _validate_observation(self) -> None:
        n = len(self.data_models)
        if not (len(self.datasets) == len(self.transforms) == len(self.series_indices) == n):
            raise ValueError("data_models, datasets, transforms and series_indices must have equal lengths.")
        for k in range(n):
            i_series = self.series_indices[k]
            if not (0 <= i_series <= self.account.n_components):
                raise ValueError(f"Dataset {k} refers to unknown series {i_series}.")
            transform = self.transforms[k]
            n_series = self.account.series(i_series).size
            if transform.n_before != n_series:
                raise ValueError(f"Transform {k} maps {transform.n_before} cells, series has {n_series}.")
            if self.datasets[k].size != transform.n_after:
                raise ValueError(f"Dataset {k} has {self.datasets[k].size} cells, transform gives {transform.n_after}.")
            if self.data_models[k].n_cells != transform.n_after:
                raise ValueError(f"Data model {k} has {self.data_models[k].n_cells} cells, dataset has {transform.n_after}.")

    # ------------------------- accessors -------------------------
    def datasets_for_series(self, i_series: int) -> List[int]:
        """Indices of the datasets observing series i_series."""
        return self._datasets_by_series.get(int(i_series), [])

    def exposure_for_component(self, i_comp: int) -> Array:
        """Realized exposure extended to the layout of component i_comp."""
        return self.exposure[self.account.mappings[i_comp - 1].exposure_index()]

    def _series_exposure(self, k: int) -> Optional[Array]:
        if k == 0 or not self.system_models[k].uses_exposure:
            return None
        return self.exposure_for_component(k)

    # ------------------------- single step -------------------------
    def update_proposal_account(self) -> Optional[Proposal]:
        return proposals.update_proposal_account(self)

    def diff_log_lik_account(self, proposal: Proposal) -> float:
        return loglik.diff_log_lik_account(self, proposal)

    def diff_log_dens_account(self, proposal: Proposal) -> float:
        return logdens.diff_log_dens_account(self, proposal)

    def update_values_account(self, proposal: Proposal) -> None:
        commit.update_values_account(self, proposal)

    def update_account(self, n_steps: int) -> AccountUpdateStats:
        """Run n_steps Metropolis-Hastings steps on the account."""
        n_steps = int(n_steps)
        if n_steps < 0:
            raise ValueError("n_steps must be non-negative.")
        stats = AccountUpdateStats(n_steps=n_steps)
        for _ in range(n_steps):
            proposal = self.update_proposal_account()
            if proposal is None:
                continue
            stats.n_generated += 1
            diff_log_lik = self.diff_log_lik_account(proposal)
            if diff_log_lik == -math.inf or math.isnan(diff_log_lik):
                stats.n_rejected_lik += 1
                continue
            diff_log_dens = self.diff_log_dens_account(proposal)
            ratio = diff_log_lik + diff_log_dens
            if math.isnan(ratio):
                continue
            if ratio >= 0.0 or self.rng.uniform() < math.exp(ratio):
                self.update_values_account(proposal)
                stats.n_accepted += 1
        if n_steps and stats.n_generated < 0.5 * n_steps:
            logger.warning(
                f"Proposal generator produced {stats.n_generated} proposals in {n_steps} steps; "
                f"check structural zeros and max_attempt={self.settings.max_attempt}."
            )
        return stats

    # ------------------------- models -------------------------
    def update_expected_exposure(self) -> None:
        """Recompute expected exposure from the population model's theta."""
        self.expected_exposure = self.account.expected_exposure(self.system_models[0].theta)

    def update_system_models(self) -> None:
        """Refresh every system model given the current account."""
        for k, model in enumerate(self.system_models):
            y = self.account.series(k).astype(np.float64)
            model.update(y, self._series_exposure(k), self.rng)

    def update_data_models(self) -> None:
        """Refresh every data model given the current account."""
        for k, model in enumerate(self.data_models):
            collapsed = self.transforms[k].collapse(self.account.series(self.series_indices[k]))
            model.update(collapsed, self.datasets[k], self.rng)

    def draw_system_models(self) -> None:
        """
        Draw system-model parameters from their priors.

        Each model is updated against a NaN-filled copy of its series; the
        account itself is left untouched.
        """
        for k, model in enumerate(self.system_models):
            y = np.full(self.account.series(k).size, np.nan, dtype=np.float64)
            model.update(y, self._series_exposure(k), self.rng)

    def draw_data_models(self) -> None:
        """Draw data-model parameters from their priors (NaN-filled dataset copies)."""
        for k, model in enumerate(self.data_models):
            collapsed = self.transforms[k].collapse(self.account.series(self.series_indices[k]))
            model.update(collapsed, np.full_like(self.datasets[k], np.nan), self.rng)

    def draw_combined(self) -> None:
        self.draw_system_models()
        self.update_expected_exposure()
        self.draw_data_models()

    def update_combined(self, n_update: int = 1) -> AccountUpdateStats:
        """Run n_update outer iterations; returns the summed account counters."""
        n_steps = self.settings.n_steps_account
        if n_steps is None:
            n_steps = self.account.population.size + sum(c.values.size for c in self.account.components)
        total = AccountUpdateStats()
        for _ in range(int(n_update)):
            stats = self.update_account(n_steps)
            self.update_system_models()
            self.update_expected_exposure()
            self.update_data_models()
            total.n_steps += stats.n_steps
            total.n_generated += stats.n_generated
            total.n_accepted += stats.n_accepted
            total.n_rejected_lik += stats.n_rejected_lik
        return total

    def run(self, n_iter: int) -> CombinedRunResult:
        """Run n_iter outer iterations and record traces."""
        result = CombinedRunResult()
        for it in range(int(n_iter)):
            stats = self.update_combined(1)
            result.log_likelihood.append(self.log_likelihood())
            result.log_density.append(self.log_density())
            result.acceptance_rate.append(stats.acceptance_rate)
            result.n_accepted += stats.n_accepted
            result.n_generated += stats.n_generated
            result.n_steps += stats.n_steps
            logger.debug(
                f"iter={it} loglik={result.log_likelihood[-1]:.3f} "
                f"logdens={result.log_density[-1]:.3f} accept={stats.acceptance_rate:.3f}"
            )
        if result.n_iter:
            rate = result.n_accepted / result.n_generated if result.n_generated else float("nan")
            logger.info(
                f"Ran {result.n_iter} iterations ({result.n_steps} account steps), acceptance rate {rate:.3f}"
            )
        return result

    # ------------------------- diagnostics -------------------------
    def log_likelihood(self) -> float:
        """Total data log-likelihood of the current account."""
        total = 0.0
        for k, model in enumerate(self.data_models):
            collapsed = self.transforms[k].collapse(self.account.series(self.series_indices[k]))
            total += model.total_log_likelihood(collapsed, self.datasets[k])
        return float(total)

    def log_density(self) -> float:
        """Total system-model log density of the current account at realized exposure."""
        total = 0.0
        for k, model in enumerate(self.system_models):
            if k == 0 and not self.settings.use_prior_popn:
                continue
            y = self.account.series(k).astype(np.float64)
            total += model.log_density(y, self._series_exposure(k))
        return float(total)

    def exposure_is_current(self, *, atol: float = 1e-9) -> bool:
        """True when the maintained exposure and expected exposure match full recomputation."""
        ok_exp = np.allclose(self.exposure, self.account.exposure(), atol=atol, rtol=0.0)
        expected = self.account.expected_exposure(self.system_models[0].theta)
        return bool(ok_exp and np.allclose(self.expected_exposure, expected, atol=atol, rtol=0.0))
