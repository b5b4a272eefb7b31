#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/iterators.py

"""
Cohort iterators over population-style and component-style arrays.

A cohort is the set of people born in the same period; a change to one cell of
the account propagates forward along the cohort line. The iterators below walk
that line one step at a time, respecting Lexis triangles, the oldest (open)
age group and the last period.

Walk rules
----------
PopulationIterator (population and accession arrays):
    (t, a) -> (t+1, a+1), pinned at the oldest age group when it is open;
    finished at the last time point (or at the oldest age when not pinned).

ComponentIterator (components and exposure, with age):
    LOWER(t, a)          -> UPPER(t+1, a)
    UPPER(t, a < A-1)    -> LOWER(t, a+1)
    UPPER(t, A-1)        -> UPPER(t+1, A-1)   (open oldest age group)
    without age:  t -> t+1

OrigDestIterator:
    ComponentIterator over the exposure-sharing base cell, also exposing the
    vector `i_vec` of every cell that shares that base (all destinations,
    children or directions).

All iterators expose reset(i), advance(), finished, i, and the generator
walk(start) which yields every offset on the cohort line from `start`.
"""

from __future__ import annotations

import itertools
from typing import Iterator, List, Optional

from .description import LOWER, UPPER, DimKind, Description

__all__ = [
    "PopulationIterator",
    "ComponentIterator",
    "OrigDestIterator",
]


class PopulationIterator:
    """Cohort cursor over a population-style array."""

    def __init__(self, description: Description, *, pin_last_age: Optional[bool] = None) -> None:
        self.description = description
        self.pin_last_age = description.last_age_open if pin_last_age is None else bool(pin_last_age)
        self._n_time = description.n_time
        self._step_time = description.step_time
        self._has_age = description.has_age
        self._n_age = description.n_age
        self._step_age = description.step_age
        self.i = 0
        self.i_time = 0
        self.i_age = 0
        self.finished = True

    def reset(self, i: int) -> None:
        self.i = int(i)
        self.i_time = self.description.i_time(self.i)
        self.i_age = self.description.i_age(self.i)
        self.finished = self._at_end()

    def _at_end(self) -> bool:
        if self.i_time >= self._n_time - 1:
            return True
        return self._has_age and (not self.pin_last_age) and self.i_age >= self._n_age - 1

    def advance(self) -> None:
        if self.finished:
            raise RuntimeError("Cannot advance a finished iterator.")
        self.i_time += 1
        self.i += self._step_time
        if self._has_age and self.i_age < self._n_age - 1:
            self.i_age += 1
            self.i += self._step_age
        self.finished = self._at_end()

    def walk(self, start: int) -> Iterator[int]:
        self.reset(start)
        yield self.i
        while not self.finished:
            self.advance()
            yield self.i


class ComponentIterator:
    """Cohort cursor over a component-style array (time, age, triangle)."""

    def __init__(self, description: Description) -> None:
        if description.has_age and not description.has_triangle:
            raise ValueError("Component-style arrays with age require a triangle dimension.")
        self.description = description
        self._n_time = description.n_time
        self._step_time = description.step_time
        self._has_age = description.has_age
        self._n_age = description.n_age
        self._step_age = description.step_age
        self._step_triangle = description.step_triangle
        self._open = description.last_age_open
        self.i = 0
        self.i_time = 0
        self.i_age = 0
        self.i_triangle = LOWER
        self.finished = True

    def reset(self, i: int) -> None:
        d = self.description
        self.i = int(i)
        self.i_time = d.i_time(self.i)
        self.i_age = d.i_age(self.i)
        self.i_triangle = d.i_triangle(self.i)
        self.finished = self._at_end()

    def _at_end(self) -> bool:
        last_time = self.i_time >= self._n_time - 1
        if not self._has_age:
            return last_time
        if self.i_triangle == LOWER:
            return last_time
        if self.i_age < self._n_age - 1:
            return False
        return last_time or not self._open

    def advance(self) -> None:
        if self.finished:
            raise RuntimeError("Cannot advance a finished iterator.")
        if not self._has_age:
            self.i_time += 1
            self.i += self._step_time
        elif self.i_triangle == LOWER:
            self.i_time += 1
            self.i_triangle = UPPER
            self.i += self._step_time + self._step_triangle
        elif self.i_age < self._n_age - 1:
            self.i_age += 1
            self.i_triangle = LOWER
            self.i += self._step_age - self._step_triangle
        else:
            self.i_time += 1
            self.i += self._step_time
        self.finished = self._at_end()

    def walk(self, start: int) -> Iterator[int]:
        self.reset(start)
        yield self.i
        while not self.finished:
            self.advance()
            yield self.i


class OrigDestIterator(ComponentIterator):
    """
    Cohort cursor over orig-dest, pool and parent-child arrays.

    The walk runs over the base cell (destination, child and direction
    coordinates set to zero); `i_vec` lists every cell sharing that base.
    """

    _VECTOR_KINDS = (DimKind.DESTINATION, DimKind.CHILD, DimKind.DIRECTION)

    def __init__(self, description: Description) -> None:
        super().__init__(description)
        self._vec_pos = description.positions_of(*self._VECTOR_KINDS)
        if not self._vec_pos:
            raise ValueError("OrigDestIterator requires destination, child or direction dimensions.")
        ranges = [range(description.shape[p]) for p in self._vec_pos]
        strides = [description.strides[p] for p in self._vec_pos]
        self.offsets: List[int] = [
            sum(c * s for c, s in zip(combo, strides)) for combo in itertools.product(*ranges)
        ]
        self.length_vec = len(self.offsets)

    def reset(self, i: int) -> None:
        d = self.description
        base = int(i)
        for p in self._vec_pos:
            base -= d.coord(i, p) * d.strides[p]
        super().reset(base)

    @property
    def i_vec(self) -> List[int]:
        return [self.i + o for o in self.offsets]
