#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/account.py

"""
Demographic account: population stock plus flow components.

Accounting identity
-------------------
Let Inc be the signed net flows of all components, laid out like the exposure
array (periods by age by Lexis triangle). Without age

    P[t+1] = P[t] + Inc[t].

With age groups a = 0..A-1 and accession Acc[t, a] (people moving from age a
to a+1 during period t)

    Acc[t, a]  = P[t, a] + Inc[t, a, UPPER]              (a <= A-2)
    P[t+1, 0]  = Inc[t, 0, LOWER]                        (entrants: births)
    P[t+1, a]  = Acc[t, a-1] + Inc[t, a, LOWER]          (1 <= a <= A-1)

and, for an open oldest age group, P[t+1, A-1] also receives
P[t, A-1] + Inc[t, A-1, UPPER].

Exposure
--------
With h = 0.5 * age_time_step, exposure is half a step of population per Lexis
triangle:

    E[t, a, UPPER] = h P[t, a]
    E[t, a, LOWER] = h P[t+1, a]                         (a < A-1)
    E[t, A-1, LOWER] = h (P[t+1, A-1] - P[t, A-1] - Inc[t, A-1, UPPER])

(the oldest lower triangle holds the cohort that enters the open group), and
without age E[t] = h (P[t] + P[t+1]). Under this definition every population
change moves exactly the exposure cells on its cohort line, by half a step
each.

Expected exposure replaces the population by the population model's rates
theta and splits the oldest age group 2/3 (upper) to 1/3 (lower).

Public API
----------
- Component
- Account
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .description import (
    IN,
    LOWER,
    OUT,
    UPPER,
    PAIRED_DEST_KINDS,
    PAIRED_ORIGIN_KINDS,
    Description,
    DimKind,
    accession_description,
    exposure_description,
)
from .mappings import ComponentMapping, ComponentRole, PopulationMapping

Array = np.ndarray

__all__ = ["Component", "Account"]


# -----------------------------------------------------------------------------
# Components
# -----------------------------------------------------------------------------
@dataclass
class Component:
    """
    One flow series of the account.

    name:
        Label used in reports.
    values:
        Counts in the layout of `description` (flattened to int64).
    description:
        Dimension metadata; requires time, and triangle when age is present.
    role:
        ComponentRole; at most one births, orig-dest, pool and net component.
    is_increment:
        True for flows that add to the population (immigration), False for
        flows that remove (deaths, emigration). Ignored for orig-dest, pool
        and net roles.
    is_net:
        Signed flow modelled with a Normal system model (ordinary net
        migration). Always True for the NET role.
    between:
        Names of the dimensions along which pool and net moves pair cells.
    """
    name: str
    values: Array
    description: Description
    role: ComponentRole = ComponentRole.ORDINARY
    is_increment: bool = True
    is_net: bool = False
    between: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        self.role = ComponentRole(self.role)
        v = np.asarray(self.values)
        if v.size != self.description.length:
            raise ValueError(
                f"Component '{self.name}' has {v.size} values but its description has {self.description.length} cells."
            )
        if np.any(~np.isfinite(v.astype(np.float64))) or np.any(v != np.round(v)):
            raise ValueError(f"Component '{self.name}' must contain finite integer counts.")
        self.values = v.astype(np.int64).reshape(-1).copy()
        self.between = tuple(self.between)
        if self.role == ComponentRole.NET:
            self.is_net = True
        if self.role == ComponentRole.BIRTHS:
            self.is_increment = True
        if not self.is_net and np.any(self.values < 0):
            raise ValueError(f"Component '{self.name}' must be non-negative.")
        if self.role in (ComponentRole.POOL, ComponentRole.NET):
            if not self.between:
                raise ValueError(f"Component '{self.name}' ({self.role.value}) requires `between` dimensions.")
            for name in self.between:
                d = self.description.dims[self.description.pos(name)]
                if d.kind not in (DimKind.STATE, DimKind.SEX):
                    raise ValueError(f"Between dimension '{name}' must be a state dimension.")
            if all(self.description.shape[self.description.pos(n)] < 2 for n in self.between):
                raise ValueError(f"Component '{self.name}' needs a between dimension with at least two categories.")
        elif self.between:
            raise ValueError(f"Only pool and net components take `between` dimensions ('{self.name}').")
        if self.role == ComponentRole.ORIG_DEST:
            if not self.description.positions_of(*PAIRED_ORIGIN_KINDS):
                raise ValueError(f"Orig-dest component '{self.name}' requires origin/destination dimensions.")
        if self.role == ComponentRole.POOL and np.any(self._pool_totals_differ()):
            raise ValueError(f"Pool component '{self.name}' must have equal totals of outs and ins.")

    def _pool_totals_differ(self) -> Array:
        """True where the OUT and IN totals of a pool disagree across `between` dims."""
        d = self.description
        arr = d.reshape(self.values)
        axes = tuple(d.pos(n) for n in self.between)
        tot = arr.sum(axis=axes, keepdims=True)
        pos_dir = int(d.pos_direction)  # type: ignore[arg-type]
        return np.take(tot, OUT, axis=pos_dir) != np.take(tot, IN, axis=pos_dir)

    @property
    def sign(self) -> int:
        """Sign with which a positive change in this component reaches the population."""
        return 1 if (self.is_increment or self.is_net) else -1

    @property
    def uses_between(self) -> bool:
        return self.role in (ComponentRole.POOL, ComponentRole.NET)


# -----------------------------------------------------------------------------
# Layout helpers
# -----------------------------------------------------------------------------
def _to_exposure_layout(arr: Array, comp: Description, expo: Description, side: str) -> Array:
    """
    Sum a component array onto the exposure layout of one side.

    side="orig" keeps ORIGIN/PARENT coordinates and sums over DESTINATION/CHILD;
    side="dest" does the reverse. Births are handled by the caller.
    """
    drop_kinds = PAIRED_DEST_KINDS if side == "orig" else PAIRED_ORIGIN_KINDS
    drop = tuple(comp.positions_of(*drop_kinds))
    kept = [d for p, d in enumerate(comp.dims) if p not in drop]
    out = arr.sum(axis=drop) if drop else arr
    names = [d.target if d.kind != DimKind.TRIANGLE else "__triangle__" for d in kept]
    order = []
    for d in expo.dims:
        key = "__triangle__" if d.kind == DimKind.TRIANGLE else d.name
        order.append(names.index(key))
    return np.transpose(out, order)


def _time_age_first(arr: Array, desc: Description) -> Array:
    """Move time to axis 0 and age (if any) to axis 1."""
    out = np.moveaxis(arr, desc.pos_time, 0)
    if desc.has_age:
        pos_age = desc.pos_age if desc.pos_age > desc.pos_time else desc.pos_age + 1  # type: ignore[operator]
        out = np.moveaxis(out, pos_age, 1)
    return out


def _time_age_restore(arr: Array, desc: Description) -> Array:
    """Inverse of _time_age_first (trailing axes beyond desc's are left in place)."""
    out = arr
    if desc.has_age:
        pos_age = desc.pos_age if desc.pos_age > desc.pos_time else desc.pos_age + 1  # type: ignore[operator]
        out = np.moveaxis(out, 1, pos_age)
    return np.moveaxis(out, 0, desc.pos_time)


# -----------------------------------------------------------------------------
# Account
# -----------------------------------------------------------------------------
class Account:
    """
    Population stock plus flow components, kept consistent by the sampler.

    The account owns its arrays. Population and component values are int64
    vectors in C order of their descriptions.
    """

    def __init__(
        self,
        population: Array,
        population_description: Description,
        components: Sequence[Component],
        *,
        age_time_step: float = 1.0,
    ) -> None:
        desc = population_description
        if desc.has_triangle or desc.has_direction:
            raise ValueError("The population cannot have triangle or direction dimensions.")
        if desc.positions_of(*(PAIRED_ORIGIN_KINDS + PAIRED_DEST_KINDS)):
            raise ValueError("The population cannot have paired dimensions.")
        if desc.n_time < 2:
            raise ValueError("The population needs at least two time points.")
        if desc.has_age and desc.n_age < 2:
            raise ValueError("The population needs at least two age groups.")
        p = np.asarray(population)
        if p.size != desc.length:
            raise ValueError(f"Population has {p.size} values but its description has {desc.length} cells.")
        if np.any(~np.isfinite(p.astype(np.float64))) or np.any(p != np.round(p)):
            raise ValueError("Population must contain finite integer counts.")
        self.population = p.astype(np.int64).reshape(-1).copy()
        self.population_description = desc
        self.components: List[Component] = list(components)
        self.age_time_step = float(age_time_step)
        if not (np.isfinite(self.age_time_step) and self.age_time_step > 0.0):
            raise ValueError("age_time_step must be positive and finite.")

        names = [c.name for c in self.components]
        if len(set(names)) != len(names):
            raise ValueError(f"Component names must be unique, got {names}.")
        for role in (ComponentRole.BIRTHS, ComponentRole.ORIG_DEST, ComponentRole.POOL, ComponentRole.NET):
            if sum(1 for c in self.components if c.role == role) > 1:
                raise ValueError(f"At most one component may have role '{role.value}'.")

        self.mappings = [ComponentMapping(c.description, desc, c.role) for c in self.components]
        self.population_mapping = PopulationMapping(desc)
        self.exposure_description = exposure_description(desc)
        self.accession_description = accession_description(desc) if desc.has_age else None
        self.accession: Optional[Array] = self.compute_accession() if desc.has_age else None

    # ------------------------- constructors -------------------------
    @classmethod
    def from_initial(
        cls,
        initial: Array,
        population_description: Description,
        components: Sequence[Component],
        *,
        age_time_step: float = 1.0,
    ) -> "Account":
        """
        Build a consistent account from the first-period population and the flows.

        `initial` holds the population at time 0 (population layout without the
        time dimension). Later time points are projected with the accounting
        identity.
        """
        desc = population_description
        shape0 = tuple(n for p, n in enumerate(desc.shape) if p != desc.pos_time)
        init = np.asarray(initial, dtype=np.int64).reshape(shape0)
        popn = np.zeros(desc.shape, dtype=np.int64)
        np.moveaxis(popn, desc.pos_time, 0)[0] = init
        out = cls(popn.reshape(-1), desc, components, age_time_step=age_time_step)
        out.population = out.project_population()
        if out.accession is not None:
            out.accession = out.compute_accession()
        return out

    # ------------------------- series access -------------------------
    @property
    def n_components(self) -> int:
        return len(self.components)

    @property
    def has_age(self) -> bool:
        return self.population_description.has_age

    def series(self, i_series: int) -> Array:
        """Return the values of series i_series (0 = population, k = component k)."""
        if i_series == 0:
            return self.population
        if 1 <= i_series <= len(self.components):
            return self.components[i_series - 1].values
        raise ValueError(f"Series index {i_series} out of range.")

    def series_description(self, i_series: int) -> Description:
        if i_series == 0:
            return self.population_description
        return self.components[i_series - 1].description

    def _i_role(self, role: ComponentRole) -> int:
        for k, c in enumerate(self.components, start=1):
            if c.role == role:
                return k
        return 0

    @property
    def i_births(self) -> int:
        return self._i_role(ComponentRole.BIRTHS)

    @property
    def i_orig_dest(self) -> int:
        return self._i_role(ComponentRole.ORIG_DEST)

    @property
    def i_pool(self) -> int:
        return self._i_role(ComponentRole.POOL)

    @property
    def i_int_net(self) -> int:
        return self._i_role(ComponentRole.NET)

    # ------------------------- accounting -------------------------
    def net_increments(self) -> Array:
        """Signed net flows of all components in exposure layout (float64 n-d array)."""
        expo = self.exposure_description
        inc = np.zeros(expo.shape, dtype=np.float64)
        for comp in self.components:
            d = comp.description
            arr = d.reshape(comp.values).astype(np.float64)
            if comp.role == ComponentRole.BIRTHS:
                inc += self._births_increments(arr, d)
            elif comp.role == ComponentRole.ORIG_DEST:
                inc -= _to_exposure_layout(arr, d, expo, "orig")
                inc += _to_exposure_layout(arr, d, expo, "dest")
            elif comp.role == ComponentRole.POOL:
                pos_dir = int(d.pos_direction)  # type: ignore[arg-type]
                dims = tuple(x for x in d.dims if x.kind != DimKind.DIRECTION)
                sub = Description(dims, last_age_open=d.last_age_open)
                inc -= _to_exposure_layout(np.take(arr, OUT, axis=pos_dir), sub, expo, "orig")
                inc += _to_exposure_layout(np.take(arr, IN, axis=pos_dir), sub, expo, "orig")
            else:
                inc += comp.sign * _to_exposure_layout(arr, d, expo, "orig")
        return inc

    def _births_increments(self, arr: Array, d: Description) -> Array:
        """Births summed over parents, placed at age 0 (lower triangle) of the child cohort."""
        expo = self.exposure_description
        drop = list(d.positions_of(*PAIRED_ORIGIN_KINDS))
        if d.has_age:
            drop += [int(d.pos_age), int(d.pos_triangle)]  # type: ignore[arg-type]
        drop_t = tuple(sorted(drop))
        summed = arr.sum(axis=drop_t) if drop_t else arr
        kept = [x for p, x in enumerate(d.dims) if p not in drop_t]
        out = np.zeros(expo.shape, dtype=np.float64)
        if expo.has_age:
            names = [x.target for x in kept]
            target_dims = [x for x in expo.dims if x.kind not in (DimKind.AGE, DimKind.TRIANGLE)]
            moved = np.transpose(summed, [names.index(x.name) for x in target_dims])
            idx: List[object] = []
            for x in expo.dims:
                if x.kind == DimKind.AGE:
                    idx.append(0)
                elif x.kind == DimKind.TRIANGLE:
                    idx.append(LOWER)
                else:
                    idx.append(slice(None))
            out[tuple(idx)] = moved
        else:
            names = [x.target for x in kept]
            out += np.transpose(summed, [names.index(x.name) for x in expo.dims])
        return out

    def project_population(self) -> Array:
        """Population implied by the time-0 stock and the current components (flat int64)."""
        desc = self.population_description
        inc = self.net_increments()
        popn = _time_age_first(desc.reshape(self.population).astype(np.float64), desc).copy()
        n_time = desc.n_time
        if not desc.has_age:
            inc_t = np.moveaxis(inc, desc.pos_time, 0)
            for t in range(n_time - 1):
                popn[t + 1] = popn[t] + inc_t[t]
        else:
            inc_t = _time_age_first(inc, desc)
            n_age = desc.n_age
            for t in range(n_time - 1):
                lower = inc_t[t, :, ..., LOWER]
                upper = inc_t[t, :, ..., UPPER]
                nxt = np.empty_like(popn[t])
                nxt[0] = lower[0]
                nxt[1:] = popn[t, :-1] + upper[:-1] + lower[1:]
                if desc.last_age_open:
                    nxt[n_age - 1] += popn[t, n_age - 1] + upper[n_age - 1]
                popn[t + 1] = nxt
        out = _time_age_restore(popn, desc)
        return np.rint(out).astype(np.int64).reshape(-1)

    def compute_accession(self) -> Array:
        """Accession implied by the current population and components (flat int64)."""
        desc = self.population_description
        if not desc.has_age:
            raise RuntimeError("Accession is only defined for populations with age.")
        inc_t = _time_age_first(self.net_increments(), desc)
        popn = _time_age_first(desc.reshape(self.population).astype(np.float64), desc)
        acc = popn[:-1, :-1] + inc_t[:, :-1, ..., UPPER]
        out = _time_age_restore(acc, desc)
        return np.rint(out).astype(np.int64).reshape(-1)

    def identity_residuals(self) -> Array:
        """Population minus the population implied by the identity (zeros when consistent)."""
        return self.population - self.project_population()

    def is_consistent(self) -> bool:
        """True when the accounting identity holds and all stocks and gross flows are non-negative."""
        if np.any(self.identity_residuals() != 0):
            return False
        if np.any(self.population < 0):
            return False
        if self.accession is not None:
            if np.any(self.accession != self.compute_accession()) or np.any(self.accession < 0):
                return False
        return all(c.is_net or np.all(c.values >= 0) for c in self.components)

    # ------------------------- exposure -------------------------
    def exposure(self) -> Array:
        """Realized exposure from the current account (flat float64, exposure layout)."""
        desc = self.population_description
        half = 0.5 * self.age_time_step
        popn = _time_age_first(desc.reshape(self.population).astype(np.float64), desc)
        if not desc.has_age:
            out = half * (popn[:-1] + popn[1:])
            return np.moveaxis(out, 0, desc.pos_time).reshape(-1).copy()
        inc_t = _time_age_first(self.net_increments(), desc)
        upper = half * popn[:-1]
        lower = half * popn[1:]
        last = desc.n_age - 1
        if desc.last_age_open:
            lower[:, last] = half * (popn[1:, last] - popn[:-1, last] - inc_t[:, last, ..., UPPER])
        out = np.stack([lower, upper], axis=-1)
        return _time_age_restore(out, desc).reshape(-1).copy()

    def expected_exposure(self, theta: Array) -> Array:
        """
        Expected exposure from population-model rates theta (population layout).

        Interior ages put half a step of the start value in the upper triangle
        and half a step of the end value in the lower triangle; the oldest age
        group splits the total 2/3 (upper) to 1/3 (lower).
        """
        desc = self.population_description
        half = 0.5 * self.age_time_step
        th = _time_age_first(desc.reshape(np.asarray(theta, dtype=np.float64)), desc)
        start = half * th[:-1]
        end = half * th[1:]
        if not desc.has_age:
            return np.moveaxis(start + end, 0, desc.pos_time).reshape(-1).copy()
        upper = start.copy()
        lower = end.copy()
        total = start[:, -1] + end[:, -1]
        upper[:, -1] = (2.0 / 3.0) * total
        lower[:, -1] = (1.0 / 3.0) * total
        out = np.stack([lower, upper], axis=-1)
        return _time_age_restore(out, desc).reshape(-1).copy()

    def expected_exposure_at(self, theta: Array, i_exp: int) -> float:
        """Expected exposure of a single exposure cell (same formula as expected_exposure)."""
        desc = self.population_description
        expo = self.exposure_description
        half = 0.5 * self.age_time_step
        coords = list(expo.unravel(i_exp))
        tri = LOWER
        if expo.has_triangle:
            tri = coords.pop(int(expo.pos_triangle))  # type: ignore[arg-type]
        i_start = desc.ravel(coords)
        i_end = i_start + desc.step_time
        start = half * float(theta[i_start])
        end = half * float(theta[i_end])
        if not desc.has_age:
            return start + end
        if desc.i_age(i_start) == desc.n_age - 1:
            total = start + end
            return (2.0 / 3.0) * total if tri == UPPER else (1.0 / 3.0) * total
        return start if tri == UPPER else end
