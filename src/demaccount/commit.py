#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/commit.py

"""
Apply an accepted proposal to the account.

The component cell(s) change first. A small update then adjusts only the
accession cell of the affected age transition; population and exposure do
not move. Any other update cascades the change through the population
cohort(s), the accession cohort(s) and the realized exposure on the cohort
line, and refreshes expected exposure on the exposure cells it walked.

All linked cells are written together. Rejected proposals never reach this
module.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from .logdens import exposure_walk
from .proposals import Proposal

if TYPE_CHECKING:  # pragma: no cover
    from .combined import CombinedAccount

__all__ = [
    "update_cell_move",
    "update_acc_small",
    "update_subsequent_popn_move",
    "update_subsequent_acc_move",
    "update_subsequent_exp_move",
    "update_values_account",
]


def update_cell_move(combined: "CombinedAccount", proposal: Proposal) -> None:
    """Write the proposed change into the component cell(s)."""
    if proposal.is_popn:
        return
    values = combined.account.components[proposal.i_comp - 1].values
    for i, d in proposal.component_changes().items():
        values[i] += d


def update_acc_small(combined: "CombinedAccount", proposal: Proposal) -> None:
    """Shift the accession cell(s) of a small update; population and exposure stay put."""
    acc = combined.account.accession
    for i, d in proposal.accession_small_changes().items():
        acc[i] += d  # type: ignore[index]


def update_subsequent_popn_move(combined: "CombinedAccount", i_popn: Optional[int], diff: int) -> None:
    """Add diff to population cell i_popn and every later cell of its cohort."""
    if i_popn is None or diff == 0:
        return
    popn = combined.account.population
    for i in list(combined.iterator_popn.walk(i_popn)):
        popn[i] += diff


def update_subsequent_acc_move(combined: "CombinedAccount", i_acc: Optional[int], diff: int) -> None:
    """Add diff to accession cell i_acc and every later cell of its cohort."""
    acc = combined.account.accession
    if acc is None or i_acc is None or diff == 0:
        return
    for i in list(combined.iterator_acc.walk(i_acc)):
        acc[i] += diff


def update_subsequent_exp_move(
    combined: "CombinedAccount",
    i_exp_first: Optional[int],
    diff: int,
    *,
    updated_popn: bool,
) -> None:
    """Shift realized exposure along the cohort and refresh expected exposure there."""
    account = combined.account
    theta = combined.system_models[0].theta
    for i, incr in exposure_walk(combined, i_exp_first, diff, updated_popn=updated_popn):
        combined.exposure[i] += incr
        combined.expected_exposure[i] = account.expected_exposure_at(theta, i)


def update_values_account(combined: "CombinedAccount", proposal: Proposal) -> None:
    """Commit an accepted proposal."""
    update_cell_move(combined, proposal)
    if proposal.is_small_update:
        update_acc_small(combined, proposal)
        return
    for i_popn, i_acc, i_exp_first, d in proposal.cohort_starts():
        update_subsequent_popn_move(combined, i_popn, d)
        update_subsequent_acc_move(combined, i_acc, d)
        update_subsequent_exp_move(combined, i_exp_first, d, updated_popn=proposal.is_popn)
