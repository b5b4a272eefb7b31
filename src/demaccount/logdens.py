#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/logdens.py

"""
Change in system-model log density caused by a proposal.

The change has three parts:

    popn:   Poisson differences along the shifted population cohort(s), when
            the population model acts as a prior (not for small updates);
    self:   the proposed cell(s) under their own system model, plus the
            Metropolis-Hastings correction for proposals drawn with expected
            rather than actual exposure (the "jump");
    exp:    every exposure-using component re-scored against the exposure
            the shifted cohort(s) would have.

For a Poisson cell with actual exposure E' (after the move) and expected
exposure E~ the self term is

    [ln p(prop | th E') - ln p(curr | th E')] + [ln p(curr | th E~) - ln p(prop | th E~)],

and the exposure term sums ln p(c | th E') - ln p(c | th E) over the cells
sharing each exposure cell on the walk. A positive count facing non-positive
exposure gives -inf, as does a structural zero receiving a non-zero proposal.
Nothing in this module mutates the account.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import numpy as np

from .densities import log_dbinom, log_dnorm, log_dpois
from .iterators import OrigDestIterator
from .mappings import ComponentRole, unhandled_role
from .models import NormalSystemModel, SystemModel
from .proposals import Proposal

if TYPE_CHECKING:  # pragma: no cover
    from .combined import CombinedAccount

__all__ = [
    "exposure_walk",
    "diff_log_dens_popn",
    "diff_log_dens_jump_popn",
    "diff_log_dens_jump_comp",
    "diff_log_dens_jump_orig_dest",
    "diff_log_dens_jump_pool_with_exposure",
    "diff_log_dens_jump_pool_no_exposure",
    "diff_log_dens_jump_net",
    "diff_log_dens_jump_comp_small",
    "diff_log_dens_exp_popn",
    "diff_log_dens_exp_comp",
    "diff_log_dens_exp_orig_dest_pool_net",
    "diff_log_dens_account",
]


# -----------------------------------------------------------------------------
# Exposure walk
# -----------------------------------------------------------------------------
def exposure_walk(
    combined: "CombinedAccount",
    i_exp_first: Optional[int],
    diff: int,
    *,
    updated_popn: bool,
) -> List[Tuple[int, float]]:
    """
    (exposure cell, change) along the cohort that starts at i_exp_first.

    With age every cell moves half a step. Without age the first cell moves
    half a step, or a full step when the change started in the population
    itself, and every later cell a full step.
    """
    if i_exp_first is None or diff == 0:
        return []
    half = 0.5 * combined.account.age_time_step
    has_age = combined.account.has_age
    out: List[Tuple[int, float]] = []
    for step, i in enumerate(list(combined.iterator_exposure.walk(i_exp_first))):
        if has_age or (step == 0 and not updated_popn):
            out.append((i, half * diff))
        else:
            out.append((i, 2.0 * half * diff))
    return out


def _own_exposure_change(combined: "CombinedAccount", proposal: Proposal, i_exposure: Optional[int]) -> float:
    """Change in the exposure a proposed cell is measured against."""
    if i_exposure is None:
        return 0.0
    half = 0.5 * combined.account.age_time_step
    out = 0.0
    for _, _, i_exp_first, d in proposal.cohort_starts():
        if i_exp_first == i_exposure:
            out += (2.0 * half * d) if (proposal.is_popn and not combined.account.has_age) else half * d
    return out


def _lam(theta: float, exposure: float) -> float:
    return theta * max(exposure, 0.0)


# -----------------------------------------------------------------------------
# Population prior
# -----------------------------------------------------------------------------
def diff_log_dens_popn(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Poisson prior differences along every population cohort the proposal shifts."""
    popn = combined.account.population
    theta = combined.system_models[0].theta
    changes: Dict[int, int] = {}
    for i_popn, _, _, d in proposal.cohort_starts():
        if i_popn is None:
            continue
        for i in list(combined.iterator_popn.walk(i_popn)):
            changes[i] = changes.get(i, 0) + d
    total = 0.0
    for i, d in changes.items():
        if d == 0:
            continue
        th = float(theta[i])
        prop = log_dpois(float(popn[i] + d), th)
        if prop == -math.inf:
            return -math.inf
        total += prop - log_dpois(float(popn[i]), th)
    return total


# -----------------------------------------------------------------------------
# Self (jump) terms
# -----------------------------------------------------------------------------
def diff_log_dens_jump_popn(combined: "CombinedAccount", proposal: Proposal) -> float:
    """
    Proposal-density ratio for a population cell drawn from Poisson(theta).

    Only scored together with the population prior, whose first cohort cell
    it cancels. Without the prior the proposal itself is the distribution of
    the first-period population.
    """
    th = float(combined.system_models[0].theta[proposal.i_cell])
    curr = float(combined.account.population[proposal.i_cell])
    return log_dpois(curr, th) - log_dpois(curr + proposal.diff, th)


def _jump_poisson_cell(
    combined: "CombinedAccount",
    model: SystemModel,
    i_cell: int,
    i_exposure: int,
    val_curr: float,
    val_prop: float,
    own_change: float,
) -> float:
    """Own-density change at actual exposure plus the expected-exposure proposal correction."""
    th = float(model.theta[i_cell])
    e_prop = float(combined.exposure[i_exposure]) + own_change
    if val_prop > 0 and not e_prop > 0.0:
        return -math.inf
    e_jump = float(combined.expected_exposure[i_exposure])
    dens = log_dpois(val_prop, _lam(th, e_prop)) - log_dpois(val_curr, _lam(th, e_prop))
    jump = log_dpois(val_curr, th * e_jump) - log_dpois(val_prop, th * e_jump)
    return dens + jump


def diff_log_dens_jump_comp(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Self term of an ordinary or births move whose model uses exposure."""
    k = proposal.i_comp
    comp = combined.account.components[k - 1]
    model = combined.system_models[k]
    if proposal.i_exposure is None:
        return 0.0
    curr = float(comp.values[proposal.i_cell])
    own = _own_exposure_change(combined, proposal, proposal.i_exposure)
    return _jump_poisson_cell(combined, model, proposal.i_cell, proposal.i_exposure, curr, curr + proposal.diff, own)


def diff_log_dens_jump_orig_dest(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Self term of an orig-dest move; the cell is measured against the origin exposure."""
    return diff_log_dens_jump_comp(combined, proposal)


def diff_log_dens_jump_pool_with_exposure(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Out cell with jump correction, in cell at its own actual exposure."""
    k = proposal.i_comp
    comp = combined.account.components[k - 1]
    model = combined.system_models[k]
    i_out, i_in = proposal.i_cell, proposal.i_cell_other
    out_curr = float(comp.values[i_out])
    ans = _jump_poisson_cell(
        combined, model, i_out, proposal.i_exposure, out_curr, out_curr + proposal.diff,  # type: ignore[arg-type]
        _own_exposure_change(combined, proposal, proposal.i_exposure),
    )
    if ans == -math.inf:
        return ans
    th_in = float(model.theta[i_in])
    in_curr = float(comp.values[i_in])
    in_prop = in_curr + proposal.diff
    e_in = float(combined.exposure[proposal.i_exposure_other])  # type: ignore[index]
    e_in += _own_exposure_change(combined, proposal, proposal.i_exposure_other)
    if in_prop > 0 and not e_in > 0.0:
        return -math.inf
    return ans + log_dpois(in_prop, _lam(th_in, e_in)) - log_dpois(in_curr, _lam(th_in, e_in))


def diff_log_dens_jump_pool_no_exposure(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Out cell cancels against its Poisson(theta) proposal; only the in cell is scored."""
    k = proposal.i_comp
    comp = combined.account.components[k - 1]
    th_in = float(combined.system_models[k].theta[proposal.i_cell_other])
    in_curr = float(comp.values[proposal.i_cell_other])
    return log_dpois(in_curr + proposal.diff, th_in) - log_dpois(in_curr, th_in)


def diff_log_dens_jump_net(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Add cell cancels against its Normal proposal; the sub cell is scored."""
    k = proposal.i_comp
    comp = combined.account.components[k - 1]
    model = combined.system_models[k]
    if not isinstance(model, NormalSystemModel):
        raise ValueError(f"Net component '{comp.name}' requires a NormalSystemModel.")
    i_sub = proposal.i_cell_other
    th = float(model.theta[i_sub])
    sd = model.sd(i_sub)  # type: ignore[arg-type]
    curr = float(comp.values[i_sub])
    return log_dnorm(curr - proposal.diff, th, sd) - log_dnorm(curr, th, sd)


def diff_log_dens_jump_comp_small(combined: "CombinedAccount", proposal: Proposal) -> float:
    """
    Self term of a small update (births, orig-dest or ordinary).

    Both cells are scored at their actual exposure, which a small update
    leaves unchanged, and the binomial split drawn with expected exposure
    supplies the proposal correction.
    """
    k = proposal.i_comp
    comp = combined.account.components[k - 1]
    model = combined.system_models[k]
    i_up, i_low = proposal.i_cell, proposal.i_cell_other
    up_curr = float(comp.values[i_up])
    low_curr = float(comp.values[i_low])  # type: ignore[index]
    up_prop = up_curr + proposal.diff
    low_prop = low_curr - proposal.diff
    th_up = float(model.theta[i_up])
    th_low = float(model.theta[i_low])  # type: ignore[index]

    if model.uses_exposure:
        e_up = float(combined.exposure[proposal.i_exposure])  # type: ignore[index]
        e_low = float(combined.exposure[proposal.i_exposure_other])  # type: ignore[index]
        if (up_prop > 0 and not e_up > 0.0) or (low_prop > 0 and not e_low > 0.0):
            return -math.inf
        lam_up, lam_low = _lam(th_up, e_up), _lam(th_low, e_low)
        j_up = th_up * float(combined.expected_exposure[proposal.i_exposure])  # type: ignore[index]
        j_low = th_low * float(combined.expected_exposure[proposal.i_exposure_other])  # type: ignore[index]
    else:
        lam_up, lam_low = th_up, th_low
        j_up, j_low = th_up, th_low

    dens = (
        log_dpois(up_prop, lam_up) - log_dpois(up_curr, lam_up)
        + log_dpois(low_prop, lam_low) - log_dpois(low_curr, lam_low)
    )
    size = up_curr + low_curr
    prob = j_up / (j_up + j_low) if (j_up + j_low) > 0.0 else 0.0
    jump = log_dbinom(up_curr, size, prob) - log_dbinom(up_prop, size, prob)
    return dens + jump


# -----------------------------------------------------------------------------
# Exposure terms
# -----------------------------------------------------------------------------
def _diff_log_dens_exp_one_comp(combined: "CombinedAccount", i_comp: int, walk: List[Tuple[int, float]]) -> float:
    """Walk one exposure-using component in lockstep with the exposure cohort."""
    comp = combined.account.components[i_comp - 1]
    mapping = combined.account.mappings[i_comp - 1]
    model = combined.system_models[i_comp]
    it = combined.iterators_comp[i_comp - 1]
    exposure = combined.exposure
    it.reset(mapping.i_cell_from_exp(walk[0][0]))
    total = 0.0
    for step, (i_exp, incr) in enumerate(walk):
        if step > 0:
            it.advance()
        e_curr = float(exposure[i_exp])
        e_prop = e_curr + incr
        cells = it.i_vec if isinstance(it, OrigDestIterator) else [it.i]
        for i in cells:
            if model.struc_zero[i]:
                continue
            c = float(comp.values[i])
            if c > 0 and not e_prop > 0.0:
                return -math.inf
            th = float(model.theta[i])
            total += log_dpois(c, _lam(th, e_prop)) - log_dpois(c, _lam(th, e_curr))
    return total


def _diff_log_dens_exp(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Exposure term over every exposure-using component and every shifted cohort."""
    by_first: Dict[int, int] = {}
    for _, _, i_exp_first, d in proposal.cohort_starts():
        if i_exp_first is not None:
            by_first[i_exp_first] = by_first.get(i_exp_first, 0) + d
    walks = [
        exposure_walk(combined, i, d, updated_popn=proposal.is_popn)
        for i, d in by_first.items()
        if d != 0
    ]
    total = 0.0
    for k in range(1, combined.account.n_components + 1):
        if not combined.system_models[k].uses_exposure:
            continue
        for walk in walks:
            if not walk:
                continue
            term = _diff_log_dens_exp_one_comp(combined, k, walk)
            if term == -math.inf:
                return term
            total += term
    return total


def diff_log_dens_exp_popn(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_dens_exp(combined, proposal)


def diff_log_dens_exp_comp(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_dens_exp(combined, proposal)


def diff_log_dens_exp_orig_dest_pool_net(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_dens_exp(combined, proposal)


# -----------------------------------------------------------------------------
# Combination
# -----------------------------------------------------------------------------
def _violates_struc_zero(combined: "CombinedAccount", proposal: Proposal) -> bool:
    """True when a structurally-zero cell would become non-zero."""
    model = combined.system_models[proposal.i_comp]
    if proposal.is_popn:
        values = combined.account.population
        changes = {proposal.i_cell: proposal.diff}
    else:
        values = combined.account.components[proposal.i_comp - 1].values
        changes = proposal.component_changes()
    return any(model.struc_zero[i] and values[i] + d != 0 for i, d in changes.items())


def _self_and_exp(combined: "CombinedAccount", proposal: Proposal) -> Tuple[float, float]:
    if proposal.is_popn:
        ans_self = diff_log_dens_jump_popn(combined, proposal) if combined.settings.use_prior_popn else 0.0
        return ans_self, diff_log_dens_exp_popn(combined, proposal)
    if proposal.is_small_update:
        return diff_log_dens_jump_comp_small(combined, proposal), 0.0
    role = proposal.role
    uses_exposure = combined.system_models[proposal.i_comp].uses_exposure
    if role in (ComponentRole.ORDINARY, ComponentRole.BIRTHS):
        ans_self = diff_log_dens_jump_comp(combined, proposal) if uses_exposure else 0.0
        return ans_self, diff_log_dens_exp_comp(combined, proposal)
    if role == ComponentRole.ORIG_DEST:
        ans_self = diff_log_dens_jump_orig_dest(combined, proposal) if uses_exposure else 0.0
        return ans_self, diff_log_dens_exp_orig_dest_pool_net(combined, proposal)
    if role == ComponentRole.POOL:
        if uses_exposure:
            ans_self = diff_log_dens_jump_pool_with_exposure(combined, proposal)
        else:
            ans_self = diff_log_dens_jump_pool_no_exposure(combined, proposal)
        return ans_self, diff_log_dens_exp_orig_dest_pool_net(combined, proposal)
    if role == ComponentRole.NET:
        return diff_log_dens_jump_net(combined, proposal), diff_log_dens_exp_orig_dest_pool_net(combined, proposal)
    unhandled_role(role)


def diff_log_dens_account(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Total change in system-model log density; -inf for infeasible proposals."""
    if _violates_struc_zero(combined, proposal):
        return -math.inf
    ans_popn = 0.0
    if combined.settings.use_prior_popn and not proposal.is_small_update:
        ans_popn = diff_log_dens_popn(combined, proposal)
        if ans_popn == -math.inf:
            return ans_popn
    ans_self, ans_exp = _self_and_exp(combined, proposal)
    if not math.isfinite(ans_self) and not math.isfinite(ans_exp) and ans_self != ans_exp:
        return -math.inf
    total = ans_popn + ans_self + ans_exp
    if math.isnan(total):
        return -math.inf
    return float(total)
