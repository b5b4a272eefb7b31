#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/proposals.py

"""
Proposal generator for the account sampler.

A proposal alters one or two cells of one series together with every linked
cell downstream on the affected cohort(s). Generating a proposal never
touches the account; it only reads the current values, the system models'
theta and the expected exposure.

Move types
----------
population:
    a first-period population cell is redrawn from Poisson(theta), truncated
    so the cohort stays non-negative.
ordinary / births:
    one cell is redrawn from Poisson(theta * expected exposure) (or
    Poisson(theta)), truncated from below for increments and from above for
    decrements; net components draw from a discretised Normal.
orig-dest:
    one cell is redrawn, bounded by both the origin and destination cohorts.
pool:
    an OUT cell and an IN cell in a different region both gain `diff`.
net:
    an add cell gains and a sub cell in a different region loses `diff`.
small update (births, orig-dest, ordinary non-net; age only):
    events move between the upper triangle of age a and the lower triangle
    of age a+1 of the same period; population and exposure are unchanged.

Every generator returns a Proposal or None ("no proposal generated").
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import numpy as np

from .densities import rnorm_int_trunc1, rpois_trunc1
from .description import IN, LOWER, OUT, UPPER, Description
from .mappings import ComponentRole, unhandled_role
from .models import NormalSystemModel, SystemModel

if TYPE_CHECKING:  # pragma: no cover
    from .combined import CombinedAccount

Array = np.ndarray

__all__ = [
    "Proposal",
    "update_proposal_account",
    "propose_population",
    "propose_component",
    "propose_small",
    "propose_orig_dest",
    "propose_pool",
    "propose_net",
]


@dataclass(frozen=True)
class Proposal:
    """
    A proposed change to the account.

    i_comp is 0 for the population and k for component k. `diff` is the change
    applied to i_cell; the role decides how it reaches i_cell_other and the
    population (see the module docstring).
    """
    i_comp: int
    role: Optional[ComponentRole]
    i_cell: int
    diff: int
    i_cell_other: Optional[int] = None
    i_popn_next: Optional[int] = None
    i_popn_next_other: Optional[int] = None
    i_acc_next: Optional[int] = None
    i_acc_next_other: Optional[int] = None
    i_exp_first: Optional[int] = None
    i_exp_first_other: Optional[int] = None
    i_exposure: Optional[int] = None
    i_exposure_other: Optional[int] = None
    is_lower_triangle: bool = False
    is_small_update: bool = False
    is_increment: bool = True
    is_net: bool = False

    @property
    def is_popn(self) -> bool:
        return self.i_comp == 0

    def inverse(self) -> "Proposal":
        """The proposal that undoes this one once it has been committed."""
        return replace(self, diff=-self.diff)

    # ------------------------- effects -------------------------
    def component_changes(self) -> Dict[int, int]:
        """Signed changes to the cells of the proposed component (empty for population moves)."""
        if self.is_popn:
            return {}
        d = self.diff
        if self.i_cell_other is None:
            return {self.i_cell: d}
        if self.is_small_update or self.role == ComponentRole.NET:
            return {self.i_cell: d, self.i_cell_other: -d}
        if self.role == ComponentRole.POOL:
            return {self.i_cell: d, self.i_cell_other: d}
        unhandled_role(self.role)

    def cohort_starts(self) -> List[Tuple[Optional[int], Optional[int], Optional[int], int]]:
        """
        (i_popn, i_acc, i_exp_first, signed diff) for every cohort the move shifts.

        Small updates shift no cohort.
        """
        d = self.diff
        if self.is_small_update:
            return []
        first = (self.i_popn_next, self.i_acc_next, self.i_exp_first)
        other = (self.i_popn_next_other, self.i_acc_next_other, self.i_exp_first_other)
        if self.is_popn:
            return [first + (d,)]
        role = self.role
        if role in (ComponentRole.ORDINARY, ComponentRole.BIRTHS):
            sign = 1 if (self.is_increment or self.is_net) else -1
            return [first + (sign * d,)]
        if role in (ComponentRole.ORIG_DEST, ComponentRole.POOL):
            return [first + (-d,), other + (d,)]
        if role == ComponentRole.NET:
            return [first + (d,), other + (-d,)]
        unhandled_role(role)

    def accession_small_changes(self) -> Dict[int, int]:
        """Signed accession changes of a small update (births change no accession)."""
        if not self.is_small_update:
            return {}
        d = self.diff
        out: Dict[int, int] = {}
        if self.role == ComponentRole.ORIG_DEST:
            for i, s in ((self.i_acc_next, -d), (self.i_acc_next_other, d)):
                if i is not None:
                    out[i] = out.get(i, 0) + s
        elif self.role == ComponentRole.ORDINARY:
            if self.i_acc_next is not None:
                out[self.i_acc_next] = (1 if self.is_increment else -1) * d
        elif self.role != ComponentRole.BIRTHS:
            unhandled_role(self.role)
        return {i: s for i, s in out.items() if s != 0}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _choose_cell(
    desc: Description,
    model: SystemModel,
    rng: np.random.Generator,
    max_attempt: int,
    fixed: Optional[Dict[int, int]] = None,
) -> Optional[int]:
    """Random cell that is not a structural zero, or None after max_attempt tries."""
    for _ in range(max_attempt):
        i = desc.random_cell(rng, fixed)
        if not model.is_struc_zero(i):
            return i
    return None


def _min_along(values: Array, cells: List[int]) -> Optional[int]:
    if not cells:
        return None
    return int(min(values[i] for i in cells))


def _min_cohort(combined: "CombinedAccount", i_popn: Optional[int], i_acc: Optional[int]) -> Optional[int]:
    """Smallest population or accession value on a cohort, or None when nothing constrains it."""
    account = combined.account
    mins = []
    if i_popn is not None:
        mins.append(_min_along(account.population, list(combined.iterator_popn.walk(i_popn))))
    if i_acc is not None and account.accession is not None:
        mins.append(_min_along(account.accession, list(combined.iterator_acc.walk(i_acc))))
    mins = [m for m in mins if m is not None]
    return min(mins) if mins else None


def _lambda(combined: "CombinedAccount", model: SystemModel, i_cell: int, i_exposure: Optional[int]) -> float:
    """Proposal mean: theta scaled by expected exposure when the model uses exposure."""
    theta = float(model.theta[i_cell])
    if i_exposure is None:
        return theta
    return theta * float(combined.expected_exposure[i_exposure])


def _pair_cell(
    desc: Description,
    i_cell: int,
    between: Tuple[int, ...],
    rng: np.random.Generator,
) -> Optional[int]:
    """Copy of i_cell with the `between` coordinates redrawn; None if they did not change."""
    out = i_cell
    changed = False
    for p in between:
        c_old = desc.coord(i_cell, p)
        c_new = int(rng.integers(desc.shape[p]))
        if c_new != c_old:
            changed = True
        out = desc.with_coord(out, p, c_new)
    return out if changed else None


# -----------------------------------------------------------------------------
# Population
# -----------------------------------------------------------------------------
def propose_population(combined: "CombinedAccount") -> Optional[Proposal]:
    """Redraw a first-period population cell."""
    account = combined.account
    rng = combined.rng
    settings = combined.settings
    desc = account.population_description
    model = combined.system_models[0]
    i_cell = _choose_cell(desc, model, rng, settings.max_attempt, {desc.pos_time: 0})
    if i_cell is None:
        return None
    mapping = account.population_mapping
    i_acc_next = mapping.i_acc_next(i_cell)

    later = list(combined.iterator_popn.walk(i_cell))[1:]
    mins = [_min_along(account.population, later)]
    if i_acc_next is not None:
        mins.append(_min_along(account.accession, list(combined.iterator_acc.walk(i_acc_next))))
    mins = [m for m in mins if m is not None]
    val_curr = int(account.population[i_cell])
    lower = val_curr - min(mins) if mins else None

    val_prop = rpois_trunc1(rng, float(model.theta[i_cell]), lower, None, max_attempt=settings.max_attempt)
    if val_prop is None or val_prop == val_curr:
        return None
    return Proposal(
        i_comp=0,
        role=None,
        i_cell=i_cell,
        diff=int(val_prop - val_curr),
        i_popn_next=i_cell,
        i_acc_next=i_acc_next,
        i_exp_first=mapping.i_exp_first(i_cell),
    )


# -----------------------------------------------------------------------------
# Ordinary components and births
# -----------------------------------------------------------------------------
def propose_component(combined: "CombinedAccount", i_comp: int) -> Optional[Proposal]:
    """Redraw one cell of an ordinary or births component."""
    account = combined.account
    rng = combined.rng
    settings = combined.settings
    comp = account.components[i_comp - 1]
    mapping = account.mappings[i_comp - 1]
    model = combined.system_models[i_comp]
    desc = comp.description

    i_cell = _choose_cell(desc, model, rng, settings.max_attempt)
    if i_cell is None:
        return None
    i_popn_next = mapping.i_popn_next(i_cell)
    i_acc_next = mapping.i_acc_next(i_cell)
    i_exposure = mapping.i_exposure(i_cell) if model.uses_exposure else None
    min_val = _min_cohort(combined, i_popn_next, i_acc_next)
    val_curr = int(comp.values[i_cell])

    if comp.is_net:
        if not isinstance(model, NormalSystemModel):
            raise ValueError(f"Net component '{comp.name}' requires a NormalSystemModel.")
        lower = None if min_val is None else val_curr - min_val
        val_prop = rnorm_int_trunc1(rng, float(model.theta[i_cell]), model.sd(i_cell), lower, None)
    else:
        if comp.is_increment:
            lower, upper = (None if min_val is None else val_curr - min_val), None
        else:
            lower, upper = None, (None if min_val is None else val_curr + min_val)
        lam = _lambda(combined, model, i_cell, i_exposure)
        val_prop = rpois_trunc1(rng, lam, lower, upper, max_attempt=settings.max_attempt)
    if val_prop is None or val_prop == val_curr:
        return None

    return Proposal(
        i_comp=i_comp,
        role=comp.role,
        i_cell=i_cell,
        diff=int(val_prop - val_curr),
        i_popn_next=i_popn_next,
        i_acc_next=i_acc_next,
        i_exp_first=mapping.i_exp_first(i_cell),
        i_exposure=i_exposure,
        is_lower_triangle=desc.has_age and desc.i_triangle(i_cell) == LOWER,
        is_increment=comp.is_increment,
        is_net=comp.is_net,
    )


def propose_small(combined: "CombinedAccount", i_comp: int) -> Optional[Proposal]:
    """
    Move events between UPPER(t, a) and LOWER(t, a+1) of one component.

    The upper cell is redrawn from Binomial(total, lam_up / (lam_up + lam_low))
    with lam from expected exposure; the lower cell takes the remainder.
    Population and exposure are unchanged; only accession (a, t) moves.
    """
    account = combined.account
    rng = combined.rng
    settings = combined.settings
    comp = account.components[i_comp - 1]
    mapping = account.mappings[i_comp - 1]
    model = combined.system_models[i_comp]
    desc = comp.description
    if not desc.has_age:
        raise RuntimeError("Small updates require an age dimension.")
    pos_age = int(desc.pos_age)  # type: ignore[arg-type]
    pos_tri = int(desc.pos_triangle)  # type: ignore[arg-type]

    i_up = i_low = None
    for _ in range(settings.max_attempt):
        cand = desc.random_cell(rng, {pos_tri: UPPER, pos_age: int(rng.integers(desc.n_age - 1))})
        other = cand + desc.step_age - desc.step_triangle
        if not (model.is_struc_zero(cand) or model.is_struc_zero(other)):
            i_up, i_low = cand, other
            break
    if i_up is None or i_low is None:
        return None

    val_up = int(comp.values[i_up])
    val_low = int(comp.values[i_low])
    size = val_up + val_low
    if size <= 0:
        return None
    i_exp_up = mapping.i_exposure(i_up) if model.uses_exposure else None
    i_exp_low = mapping.i_exposure(i_low) if model.uses_exposure else None
    lam_up = _lambda(combined, model, i_up, i_exp_up)
    lam_low = _lambda(combined, model, i_low, i_exp_low)
    if not (lam_up + lam_low > 0.0):
        return None
    val_up_prop = int(rng.binomial(size, lam_up / (lam_up + lam_low)))
    diff = val_up_prop - val_up
    if diff == 0:
        return None

    i_acc = i_acc_other = None
    acc = account.accession
    if comp.role == ComponentRole.ORIG_DEST:
        i_acc = mapping.i_acc_next(i_up, "orig")
        i_acc_other = mapping.i_acc_next(i_up, "dest")
        if i_acc != i_acc_other:
            if acc[i_acc] - diff < 0 or acc[i_acc_other] + diff < 0:  # type: ignore[index]
                return None
    elif comp.role == ComponentRole.ORDINARY:
        i_acc = mapping.i_acc_next(i_up)
        if acc[i_acc] + comp.sign * diff < 0:  # type: ignore[index]
            return None
    elif comp.role != ComponentRole.BIRTHS:
        unhandled_role(comp.role)

    return Proposal(
        i_comp=i_comp,
        role=comp.role,
        i_cell=i_up,
        i_cell_other=i_low,
        diff=int(diff),
        i_acc_next=i_acc,
        i_acc_next_other=i_acc_other,
        i_exposure=i_exp_up,
        i_exposure_other=i_exp_low,
        is_small_update=True,
        is_increment=comp.is_increment,
        is_net=comp.is_net,
    )


# -----------------------------------------------------------------------------
# Orig-dest, pool and net
# -----------------------------------------------------------------------------
def propose_orig_dest(combined: "CombinedAccount", i_comp: int) -> Optional[Proposal]:
    """Redraw one orig-dest cell, keeping both origin and destination cohorts non-negative."""
    account = combined.account
    rng = combined.rng
    settings = combined.settings
    comp = account.components[i_comp - 1]
    mapping = account.mappings[i_comp - 1]
    model = combined.system_models[i_comp]
    desc = comp.description

    i_cell = _choose_cell(desc, model, rng, settings.max_attempt)
    if i_cell is None:
        return None
    i_popn_orig = mapping.i_popn_next(i_cell, "orig")
    i_popn_dest = mapping.i_popn_next(i_cell, "dest")
    i_acc_orig = mapping.i_acc_next(i_cell, "orig")
    i_acc_dest = mapping.i_acc_next(i_cell, "dest")
    i_exposure = mapping.i_exposure(i_cell) if model.uses_exposure else None
    val_curr = int(comp.values[i_cell])

    if i_popn_orig == i_popn_dest and i_acc_orig == i_acc_dest:
        lower, upper = None, None
    else:
        min_orig = _min_cohort(combined, i_popn_orig, i_acc_orig)
        min_dest = _min_cohort(combined, i_popn_dest, i_acc_dest)
        lower = None if min_dest is None else val_curr - min_dest
        upper = None if min_orig is None else val_curr + min_orig
    lam = _lambda(combined, model, i_cell, i_exposure)
    val_prop = rpois_trunc1(rng, lam, lower, upper, max_attempt=settings.max_attempt)
    if val_prop is None or val_prop == val_curr:
        return None

    return Proposal(
        i_comp=i_comp,
        role=comp.role,
        i_cell=i_cell,
        diff=int(val_prop - val_curr),
        i_popn_next=i_popn_orig,
        i_popn_next_other=i_popn_dest,
        i_acc_next=i_acc_orig,
        i_acc_next_other=i_acc_dest,
        i_exp_first=mapping.i_exp_first(i_cell, "orig"),
        i_exp_first_other=mapping.i_exp_first(i_cell, "dest"),
        i_exposure=i_exposure,
        is_lower_triangle=desc.has_age and desc.i_triangle(i_cell) == LOWER,
    )


def _choose_pair(
    combined: "CombinedAccount",
    i_comp: int,
    fixed: Optional[Dict[int, int]],
    other_fixed: Optional[Dict[int, int]],
) -> Optional[Tuple[int, int]]:
    """Two cells sharing every coordinate except the `between` ones (and `other_fixed`)."""
    account = combined.account
    comp = account.components[i_comp - 1]
    model = combined.system_models[i_comp]
    desc = comp.description
    between = tuple(desc.pos(n) for n in comp.between)
    for _ in range(combined.settings.max_attempt):
        i_a = desc.random_cell(combined.rng, fixed)
        i_b = _pair_cell(desc, i_a, between, combined.rng)
        if i_b is None:
            continue
        for p, v in (other_fixed or {}).items():
            i_b = desc.with_coord(i_b, p, v)
        if model.is_struc_zero(i_a) or model.is_struc_zero(i_b):
            continue
        return i_a, i_b
    return None


def propose_pool(combined: "CombinedAccount", i_comp: int) -> Optional[Proposal]:
    """Add the same number of events to an OUT cell and an IN cell in another region."""
    account = combined.account
    rng = combined.rng
    settings = combined.settings
    comp = account.components[i_comp - 1]
    mapping = account.mappings[i_comp - 1]
    model = combined.system_models[i_comp]
    desc = comp.description
    pos_dir = int(desc.pos_direction)  # type: ignore[arg-type]

    pair = _choose_pair(combined, i_comp, {pos_dir: OUT}, {pos_dir: IN})
    if pair is None:
        return None
    i_out, i_in = pair
    i_popn_out = mapping.i_popn_next(i_out)
    i_popn_in = mapping.i_popn_next(i_in)
    i_acc_out = mapping.i_acc_next(i_out)
    i_acc_in = mapping.i_acc_next(i_in)
    min_out = _min_cohort(combined, i_popn_out, i_acc_out)
    min_in = _min_cohort(combined, i_popn_in, i_acc_in)
    val_out = int(comp.values[i_out])
    val_in = int(comp.values[i_in])

    lower = val_out - val_in
    if min_in is not None:
        lower = max(lower, val_out - min_in)
    upper = None if min_out is None else val_out + min_out
    i_exposure = mapping.i_exposure(i_out) if model.uses_exposure else None
    lam = _lambda(combined, model, i_out, i_exposure)
    val_prop = rpois_trunc1(rng, lam, lower, upper, max_attempt=settings.max_attempt)
    if val_prop is None or val_prop == val_out:
        return None

    return Proposal(
        i_comp=i_comp,
        role=comp.role,
        i_cell=i_out,
        i_cell_other=i_in,
        diff=int(val_prop - val_out),
        i_popn_next=i_popn_out,
        i_popn_next_other=i_popn_in,
        i_acc_next=i_acc_out,
        i_acc_next_other=i_acc_in,
        i_exp_first=mapping.i_exp_first(i_out),
        i_exp_first_other=mapping.i_exp_first(i_in),
        i_exposure=i_exposure,
        i_exposure_other=mapping.i_exposure(i_in) if model.uses_exposure else None,
        is_lower_triangle=desc.has_age and desc.i_triangle(i_out) == LOWER,
    )


def propose_net(combined: "CombinedAccount", i_comp: int) -> Optional[Proposal]:
    """Shift net migration between two regions: the add cell gains, the sub cell loses."""
    account = combined.account
    rng = combined.rng
    comp = account.components[i_comp - 1]
    mapping = account.mappings[i_comp - 1]
    model = combined.system_models[i_comp]
    desc = comp.description
    if not isinstance(model, NormalSystemModel):
        raise ValueError(f"Net component '{comp.name}' requires a NormalSystemModel.")

    pair = _choose_pair(combined, i_comp, None, None)
    if pair is None:
        return None
    i_add, i_sub = pair
    i_popn_add = mapping.i_popn_next(i_add)
    i_popn_sub = mapping.i_popn_next(i_sub)
    i_acc_add = mapping.i_acc_next(i_add)
    i_acc_sub = mapping.i_acc_next(i_sub)
    min_add = _min_cohort(combined, i_popn_add, i_acc_add)
    min_sub = _min_cohort(combined, i_popn_sub, i_acc_sub)
    val_add = int(comp.values[i_add])

    lower = None if min_add is None else val_add - min_add
    upper = None if min_sub is None else val_add + min_sub
    val_prop = rnorm_int_trunc1(rng, float(model.theta[i_add]), model.sd(i_add), lower, upper)
    if val_prop is None or val_prop == val_add:
        return None

    return Proposal(
        i_comp=i_comp,
        role=comp.role,
        i_cell=i_add,
        i_cell_other=i_sub,
        diff=int(val_prop - val_add),
        i_popn_next=i_popn_add,
        i_popn_next_other=i_popn_sub,
        i_acc_next=i_acc_add,
        i_acc_next_other=i_acc_sub,
        i_exp_first=mapping.i_exp_first(i_add),
        i_exp_first_other=mapping.i_exp_first(i_sub),
        is_lower_triangle=desc.has_age and desc.i_triangle(i_add) == LOWER,
        is_net=True,
    )


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------
def _rcateg1(cum_prob: Array, rng: np.random.Generator) -> int:
    """Draw a 0-based category from cumulative probabilities."""
    k = int(np.searchsorted(cum_prob, rng.uniform(), side="right"))
    return min(k, len(cum_prob) - 1)


def update_proposal_account(combined: "CombinedAccount") -> Optional[Proposal]:
    """
    Choose a move type and generate a proposal.

    With probability prob_popn the population is updated; otherwise a
    component is drawn from cum_prob_comp and dispatched on its role. Small
    updates are only tried when the account has age, and never for pool,
    net or net-valued ordinary components.
    """
    account = combined.account
    rng = combined.rng
    settings = combined.settings
    if account.n_components == 0 or rng.uniform() < settings.prob_popn:
        return propose_population(combined)

    i_comp = _rcateg1(combined.cum_prob_comp, rng) + 1
    comp = account.components[i_comp - 1]
    role = comp.role
    if role in (ComponentRole.POOL, ComponentRole.NET) or comp.is_net or not account.has_age:
        is_small = False
    else:
        is_small = rng.uniform() < settings.prob_small_update

    if role == ComponentRole.BIRTHS:
        return propose_small(combined, i_comp) if is_small else propose_component(combined, i_comp)
    if role == ComponentRole.ORIG_DEST:
        return propose_small(combined, i_comp) if is_small else propose_orig_dest(combined, i_comp)
    if role == ComponentRole.POOL:
        return propose_pool(combined, i_comp)
    if role == ComponentRole.NET:
        return propose_net(combined, i_comp)
    if role == ComponentRole.ORDINARY:
        return propose_small(combined, i_comp) if is_small else propose_component(combined, i_comp)
    unhandled_role(role)
