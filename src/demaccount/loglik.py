#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/loglik.py

"""
Change in data log-likelihood caused by a proposal.

Only datasets tied to a series touched by the proposal are visited, and only
the dataset cells those changes reach. Changes are accumulated per dataset
cell before scoring, so two account cells that collapse onto the same
dataset cell (or an origin and destination cohort that cancel in a dataset
without regions) are scored once, on their net change.

As soon as a proposed term is non-finite the whole evaluation returns it:
an impossible proposal is rejected without scoring the rest.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Dict

import numpy as np

from .mappings import ComponentRole, unhandled_role
from .proposals import Proposal

if TYPE_CHECKING:  # pragma: no cover
    from .combined import CombinedAccount

__all__ = [
    "diff_log_lik_series",
    "diff_log_lik_account_move_popn",
    "diff_log_lik_account_move_comp",
    "diff_log_lik_account_move_comp_small",
    "diff_log_lik_account_move_orig_dest",
    "diff_log_lik_account_move_pool",
    "diff_log_lik_account_move_net",
    "diff_log_lik_account",
]


def diff_log_lik_series(combined: "CombinedAccount", i_series: int, changes: Dict[int, int]) -> float:
    """Sum of log-likelihood changes over the datasets observing series i_series."""
    if not changes:
        return 0.0
    values = combined.account.series(i_series)
    total = 0.0
    for k in combined.datasets_for_series(i_series):
        transform = combined.transforms[k]
        model = combined.data_models[k]
        dataset = combined.datasets[k]
        by_after: Dict[int, int] = {}
        for i_before, d in changes.items():
            i_after = transform.get_i_after(i_before)
            if i_after is None or np.isnan(dataset[i_after]):
                continue
            by_after[i_after] = by_after.get(i_after, 0) + d
        for i_after, d in by_after.items():
            if d == 0:
                continue
            curr = float(np.sum(values[transform.get_i_before(i_after)]))
            ll_prop = model.log_likelihood(curr + d, dataset, i_after)
            if ll_prop == -math.inf:
                return -math.inf
            term = ll_prop - model.log_likelihood(curr, dataset, i_after)
            if not math.isfinite(term):
                return -math.inf if math.isnan(term) else term
            total += term
    return total


def _cohort_changes(combined: "CombinedAccount", proposal: Proposal) -> Dict[int, int]:
    """Signed population changes along every cohort the proposal shifts."""
    out: Dict[int, int] = {}
    for i_popn, _, _, d in proposal.cohort_starts():
        if i_popn is None:
            continue
        for i in list(combined.iterator_popn.walk(i_popn)):
            out[i] = out.get(i, 0) + d
    return {i: d for i, d in out.items() if d != 0}


def _diff_log_lik_moves(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Component cells first, then the population cohort(s)."""
    ans = 0.0
    if not proposal.is_popn:
        ans = diff_log_lik_series(combined, proposal.i_comp, proposal.component_changes())
        if not math.isfinite(ans):
            return ans
    popn = diff_log_lik_series(combined, 0, _cohort_changes(combined, proposal))
    if not math.isfinite(popn):
        return popn
    return ans + popn


def diff_log_lik_account_move_popn(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_lik_moves(combined, proposal)


def diff_log_lik_account_move_comp(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_lik_moves(combined, proposal)


def diff_log_lik_account_move_comp_small(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Small updates leave the population unchanged; only component datasets move."""
    return diff_log_lik_series(combined, proposal.i_comp, proposal.component_changes())


def diff_log_lik_account_move_orig_dest(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_lik_moves(combined, proposal)


def diff_log_lik_account_move_pool(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_lik_moves(combined, proposal)


def diff_log_lik_account_move_net(combined: "CombinedAccount", proposal: Proposal) -> float:
    return _diff_log_lik_moves(combined, proposal)


def diff_log_lik_account(combined: "CombinedAccount", proposal: Proposal) -> float:
    """Dispatch on the kind of move."""
    if proposal.is_popn:
        return diff_log_lik_account_move_popn(combined, proposal)
    if proposal.is_small_update:
        return diff_log_lik_account_move_comp_small(combined, proposal)
    role = proposal.role
    if role in (ComponentRole.ORDINARY, ComponentRole.BIRTHS):
        return diff_log_lik_account_move_comp(combined, proposal)
    if role == ComponentRole.ORIG_DEST:
        return diff_log_lik_account_move_orig_dest(combined, proposal)
    if role == ComponentRole.POOL:
        return diff_log_lik_account_move_pool(combined, proposal)
    if role == ComponentRole.NET:
        return diff_log_lik_account_move_net(combined, proposal)
    unhandled_role(role)
