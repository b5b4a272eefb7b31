#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/mappings.py

"""
Cross-series offset mappings.

A change to a component cell reaches the rest of the account through three
other arrays: the population (the cohort's next stock), the accession array
(the cohort's next age transition) and the exposure array (the first exposure
cell whose value changes). The mappings here translate a flat component
offset into those offsets in O(1) using precomputed strides.

Mapping rules with age, for a component cell (t, a, triangle)
-------------------------------------------------------------
    LOWER(t, a)         -> P[t+1, a],   Acc[t+1, a], E[t, a, LOWER]
    UPPER(t, a < A-1)   -> P[t+1, a+1], Acc[t, a],   E[t, a+1, LOWER]
    UPPER(t, A-1)       -> P[t+1, A-1], none,        E[t+1, A-1, UPPER]
    births (any parent age) -> P[t+1, 0], Acc[t+1, 0], E[t, 0, LOWER]
                               at the child coordinates

Offsets that fall outside the arrays (last period, closed oldest age group)
are returned as None. Paired dimensions map to the population through their
`base`: the "orig" side reads ORIGIN/PARENT coordinates and the "dest" side
reads DESTINATION/CHILD coordinates.

Public API
----------
- ComponentRole
- ComponentMapping
- PopulationMapping
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, NoReturn, Optional, Tuple

import numpy as np

from .description import (
    LOWER,
    UPPER,
    PAIRED_DEST_KINDS,
    PAIRED_ORIGIN_KINDS,
    Description,
    DimKind,
    accession_description,
    exposure_description,
)

Array = np.ndarray
Side = Literal["orig", "dest"]

__all__ = ["ComponentRole", "unhandled_role", "ComponentMapping", "PopulationMapping"]


class ComponentRole(str, Enum):
    """Closed set of component roles; each has its own proposal and update rules."""
    ORDINARY = "ordinary"
    BIRTHS = "births"
    ORIG_DEST = "orig_dest"
    POOL = "pool"
    NET = "net"


def unhandled_role(role: object) -> NoReturn:
    """Raise for a role that no dispatcher branch handles."""
    raise ValueError(f"Unsupported component role: {role}")


_STRUCTURAL_KINDS = (DimKind.TIME, DimKind.AGE, DimKind.TRIANGLE)


def _strides_by_name(description: Optional[Description]) -> Dict[str, int]:
    """Return {dimension name: stride} for a description (empty for None)."""
    if description is None:
        return {}
    return {d.name: s for d, s in zip(description.dims, description.strides)}


class PopulationMapping:
    """Offsets reached by a change to a population cell (population moves)."""

    def __init__(self, population: Description) -> None:
        self.population = population
        self.exposure = exposure_description(population)
        self.accession = accession_description(population) if population.has_age else None
        e_strides = _strides_by_name(self.exposure)
        a_strides = _strides_by_name(self.accession)
        self._other: List[Tuple[int, int, int]] = []
        for p, d in enumerate(population.dims):
            if d.kind in _STRUCTURAL_KINDS:
                continue
            self._other.append((p, e_strides[d.name], a_strides.get(d.name, 0)))

    def _others(self, i: int) -> Tuple[int, int]:
        e = a = 0
        for p, es, acs in self._other:
            c = self.population.coord(i, p)
            e += c * es
            a += c * acs
        return e, a

    def i_acc_next(self, i: int) -> Optional[int]:
        """Accession cell of the interval that starts at population cell i."""
        acc = self.accession
        if acc is None:
            return None
        t = self.population.i_time(i)
        a = self.population.i_age(i)
        if t > acc.n_time - 1 or a > acc.n_age - 1:
            return None
        _, other = self._others(i)
        return other + t * acc.step_time + a * acc.step_age

    def i_exp_first(self, i: int) -> Optional[int]:
        """First exposure cell changed by a change to population cell i."""
        exp = self.exposure
        t = self.population.i_time(i)
        if t > exp.n_time - 1:
            return None
        other, _ = self._others(i)
        out = other + t * exp.step_time
        if self.population.has_age:
            out += self.population.i_age(i) * exp.step_age + UPPER * exp.step_triangle
        return out


class ComponentMapping:
    """
    Offsets reached by a change to one cell of a component.

    Parameters
    ----------
    description:
        Description of the component.
    population:
        Description of the population.
    role:
        Role of the component; births map to age 0 of the child cohort.
    """

    def __init__(self, description: Description, population: Description, role: ComponentRole) -> None:
        self.description = description
        self.population = population
        self.role = ComponentRole(role)
        self.exposure = exposure_description(population)
        self.accession = accession_description(population) if population.has_age else None
        self._validate()

        p_strides = _strides_by_name(population)
        e_strides = _strides_by_name(self.exposure)
        a_strides = _strides_by_name(self.accession)
        self._sides: Dict[str, List[Tuple[int, int, int, int]]] = {
            "orig": self._build_side(PAIRED_ORIGIN_KINDS, p_strides, e_strides, a_strides),
            "dest": self._build_side(PAIRED_DEST_KINDS, p_strides, e_strides, a_strides),
        }

        # exposure position feeding each component dimension (None -> coordinate 0)
        e_pos = {d.name: p for p, d in enumerate(self.exposure.dims)}
        self._from_exp: List[Tuple[int, Optional[int]]] = []
        for d, s in zip(description.dims, description.strides):
            if d.kind == DimKind.TRIANGLE:
                src = self.exposure.pos_triangle
            elif d.kind in PAIRED_DEST_KINDS or d.kind == DimKind.DIRECTION:
                src = None
            else:
                src = e_pos[d.target]
            self._from_exp.append((s, src))
        self._exp_index: Optional[Array] = None

    # ------------------------- construction -------------------------
    def _validate(self) -> None:
        """Check that the component lines up with the population."""
        comp, popn = self.description, self.population
        if comp.n_time != popn.n_time - 1:
            raise ValueError(
                f"Component time length {comp.n_time} does not match population periods {popn.n_time - 1}."
            )
        if comp.last_age_open != popn.last_age_open:
            raise ValueError("Component and population disagree on the oldest age group.")
        if popn.has_age != comp.has_age:
            raise ValueError("Component and population must both have or both lack an age dimension.")
        if comp.has_age:
            if not comp.has_triangle:
                raise ValueError("Components with age require a Lexis triangle dimension.")
            if comp.n_age != popn.n_age:
                raise ValueError("Component and population age dimensions differ in length.")
        if comp.has_direction != (self.role == ComponentRole.POOL):
            raise ValueError("A direction dimension is required for pool components and only for them.")
        popn_names = {d.name: d for d in popn.dims}
        for d in comp.dims:
            if d.kind in (DimKind.TRIANGLE, DimKind.DIRECTION):
                continue
            ref = popn_names.get(d.target)
            if ref is None:
                raise ValueError(f"Component dimension '{d.name}' has no population counterpart.")
            if d.kind != DimKind.TIME and d.length != ref.length:
                raise ValueError(f"Component dimension '{d.name}' differs in length from '{ref.name}'.")
        for side_kinds in (PAIRED_ORIGIN_KINDS, PAIRED_DEST_KINDS):
            covered = set()
            for d in comp.dims:
                if d.kind in (DimKind.TRIANGLE, DimKind.DIRECTION):
                    continue
                if d.base is None or d.kind in side_kinds:
                    covered.add(d.target)
            missing = [n for n in popn_names if n not in covered]
            if missing:
                raise ValueError(f"Component does not classify by population dimensions {missing}.")

    def _build_side(
        self,
        kinds: Tuple[DimKind, ...],
        p_strides: Dict[str, int],
        e_strides: Dict[str, int],
        a_strides: Dict[str, int],
    ) -> List[Tuple[int, int, int, int]]:
        """Return (comp pos, popn stride, exposure stride, accession stride) for non-structural dims."""
        out = []
        for p, d in enumerate(self.description.dims):
            if d.kind in _STRUCTURAL_KINDS or d.kind == DimKind.DIRECTION:
                continue
            if d.base is not None and d.kind not in kinds:
                continue
            out.append((p, p_strides[d.target], e_strides[d.target], a_strides.get(d.target, 0)))
        return out

    def _others(self, i: int, side: Side) -> Tuple[int, int, int]:
        """Return the population, exposure and accession offsets of the non-structural coordinates."""
        pp = ee = aa = 0
        desc = self.description
        for p, ps, es, acs in self._sides[side]:
            c = desc.coord(i, p)
            pp += c * ps
            ee += c * es
            aa += c * acs
        return pp, ee, aa

    def _cohort_side(self, side: Side) -> Side:
        """Births always feed the child cohort."""
        return "dest" if self.role == ComponentRole.BIRTHS else side

    def _tat(self, i: int) -> Tuple[int, int, int]:
        d = self.description
        return d.i_time(i), d.i_age(i), d.i_triangle(i)

    # ------------------------- mappings -------------------------
    def i_popn_next(self, i: int, side: Side = "orig") -> Optional[int]:
        """First population cell on the cohort changed by cell i, or None if the cohort exits."""
        popn = self.population
        t, a, tri = self._tat(i)
        other, _, _ = self._others(i, self._cohort_side(side))
        out = other + (t + 1) * popn.step_time
        if not popn.has_age:
            return out
        if self.role == ComponentRole.BIRTHS:
            return out
        if tri == LOWER:
            return out + a * popn.step_age
        if a < popn.n_age - 1:
            return out + (a + 1) * popn.step_age
        if popn.last_age_open:
            return out + a * popn.step_age
        return None

    def i_acc_next(self, i: int, side: Side = "orig") -> Optional[int]:
        """First accession cell on the cohort changed by cell i, or None."""
        acc = self.accession
        if acc is None:
            return None
        t, a, tri = self._tat(i)
        _, _, other = self._others(i, self._cohort_side(side))
        if self.role == ComponentRole.BIRTHS or tri == LOWER:
            age = 0 if self.role == ComponentRole.BIRTHS else a
            if t + 1 > acc.n_time - 1 or age > acc.n_age - 1:
                return None
            return other + (t + 1) * acc.step_time + age * acc.step_age
        if a > acc.n_age - 1:
            return None
        return other + t * acc.step_time + a * acc.step_age

    def i_exposure(self, i: int) -> int:
        """Exposure cell of the origin / parent population that cell i is measured against."""
        exp = self.exposure
        t, a, tri = self._tat(i)
        _, other, _ = self._others(i, "orig")
        out = other + t * exp.step_time
        if exp.has_age:
            out += a * exp.step_age + tri * exp.step_triangle
        return out

    def i_exp_first(self, i: int, side: Side = "orig") -> Optional[int]:
        """First exposure cell whose value changes when cell i changes, or None."""
        exp = self.exposure
        t, a, tri = self._tat(i)
        _, other, _ = self._others(i, self._cohort_side(side))
        if not exp.has_age:
            return other + t * exp.step_time
        if self.role == ComponentRole.BIRTHS:
            return other + t * exp.step_time + LOWER * exp.step_triangle
        if tri == LOWER:
            return other + t * exp.step_time + a * exp.step_age + LOWER * exp.step_triangle
        if a < exp.n_age - 1:
            return other + t * exp.step_time + (a + 1) * exp.step_age + LOWER * exp.step_triangle
        if exp.last_age_open and t + 1 <= exp.n_time - 1:
            return other + (t + 1) * exp.step_time + a * exp.step_age + UPPER * exp.step_triangle
        return None

    def i_cell_from_exp(self, i_exp: int) -> int:
        """First component cell measured against exposure cell i_exp."""
        out = 0
        for stride, src in self._from_exp:
            if src is not None:
                out += self.exposure.coord(i_exp, src) * stride
        return out

    def exposure_index(self) -> Array:
        """Vector of i_exposure over every component cell (cached)."""
        if self._exp_index is None:
            self._exp_index = np.fromiter(
                (self.i_exposure(i) for i in range(self.description.length)),
                dtype=np.int64,
                count=self.description.length,
            )
        return self._exp_index
