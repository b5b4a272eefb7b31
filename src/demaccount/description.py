#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/description.py

"""
Dimension metadata and flat-offset arithmetic for demographic arrays.

Every array of the account (population, components, exposure, accession) is
stored as a flat numpy vector in C (row-major) order. A Description records the
dimensions of such an array and the strides needed to move between a flat
offset and its coordinates in O(1).

Dimension kinds
---------------
- TIME:       periods (components, exposure) or time points (population)
- AGE:        age groups; the oldest group may be open (absorbing)
- TRIANGLE:   Lexis triangle, LOWER = 0 or UPPER = 1
- SEX, STATE: ordinary classifying dimensions
- ORIGIN / DESTINATION, PARENT / CHILD:
              paired dimensions; `base` names the population dimension
              they refer to
- DIRECTION:  pool direction, OUT = 0 or IN = 1

Public API
----------
- DimKind, Dimension, Description
- LOWER, UPPER, OUT, IN
- exposure_description(popn) -> Description
- accession_description(popn) -> Description
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

Array = np.ndarray

__all__ = [
    "DimKind",
    "Dimension",
    "Description",
    "LOWER",
    "UPPER",
    "OUT",
    "IN",
    "PAIRED_ORIGIN_KINDS",
    "PAIRED_DEST_KINDS",
    "exposure_description",
    "accession_description",
]


LOWER = 0
UPPER = 1
OUT = 0
IN = 1


class DimKind(str, Enum):
    TIME = "time"
    AGE = "age"
    TRIANGLE = "triangle"
    SEX = "sex"
    STATE = "state"
    ORIGIN = "origin"
    DESTINATION = "destination"
    PARENT = "parent"
    CHILD = "child"
    DIRECTION = "direction"


PAIRED_ORIGIN_KINDS = (DimKind.ORIGIN, DimKind.PARENT)
PAIRED_DEST_KINDS = (DimKind.DESTINATION, DimKind.CHILD)
_PAIRED_KINDS = PAIRED_ORIGIN_KINDS + PAIRED_DEST_KINDS
_UNIQUE_KINDS = (DimKind.TIME, DimKind.AGE, DimKind.TRIANGLE, DimKind.DIRECTION)


@dataclass(frozen=True)
class Dimension:
    """
    One dimension of a demographic array.

    name:
        Label of the dimension, unique within a Description.
    kind:
        Semantic role of the dimension (DimKind).
    length:
        Number of categories.
    base:
        For paired kinds, the name of the population dimension the pair
        refers to (e.g. "region" for "region_orig" / "region_dest").
    """
    name: str
    kind: DimKind
    length: int
    base: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", DimKind(self.kind))
        object.__setattr__(self, "length", int(self.length))
        if self.length < 1:
            raise ValueError(f"Dimension '{self.name}' must have positive length.")
        if self.kind in (DimKind.TRIANGLE, DimKind.DIRECTION) and self.length != 2:
            raise ValueError(f"Dimension '{self.name}' of kind {self.kind.value} must have length 2.")
        if self.kind in _PAIRED_KINDS and not self.base:
            raise ValueError(f"Paired dimension '{self.name}' requires a base dimension name.")
        if self.kind not in _PAIRED_KINDS and self.base is not None:
            raise ValueError(f"Dimension '{self.name}' is not paired and cannot carry a base.")

    @property
    def target(self) -> str:
        """Name of the population dimension this dimension indexes."""
        return self.base if self.base is not None else self.name


class Description:
    """
    Immutable dimension metadata of one flat array.

    Strides follow C order: the last dimension varies fastest. Shared by
    reference between the account, the iterators and the mappings.
    """

    def __init__(self, dims: Sequence[Dimension], *, last_age_open: bool = True) -> None:
        dims = tuple(dims)
        if not dims:
            raise ValueError("A description requires at least one dimension.")
        names = [d.name for d in dims]
        if len(set(names)) != len(names):
            raise ValueError(f"Dimension names must be unique, got {names}.")
        for kind in _UNIQUE_KINDS:
            if sum(1 for d in dims if d.kind == kind) > 1:
                raise ValueError(f"At most one dimension of kind '{kind.value}' is allowed.")
        if not any(d.kind == DimKind.TIME for d in dims):
            raise ValueError("A description requires a time dimension.")

        self._dims = dims
        self._shape = tuple(d.length for d in dims)
        strides = [1] * len(dims)
        for p in range(len(dims) - 2, -1, -1):
            strides[p] = strides[p + 1] * self._shape[p + 1]
        self._strides = tuple(strides)
        self._length = int(np.prod(self._shape))
        self._pos: Dict[str, int] = {d.name: p for p, d in enumerate(dims)}
        self._last_age_open = bool(last_age_open)

        self._pos_time = self._first_pos(DimKind.TIME)
        self._pos_age = self._first_pos(DimKind.AGE)
        self._pos_triangle = self._first_pos(DimKind.TRIANGLE)
        self._pos_direction = self._first_pos(DimKind.DIRECTION)

    def _first_pos(self, kind: DimKind) -> Optional[int]:
        """Return the position of the (unique) dimension of a kind, or None."""
        for p, d in enumerate(self._dims):
            if d.kind == kind:
                return p
        return None

    def __repr__(self) -> str:
        dims = ", ".join(f"{d.name}[{d.length}]" for d in self._dims)
        return f"Description({dims})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Description):
            return NotImplemented
        return self._dims == other._dims and self._last_age_open == other._last_age_open

    def __hash__(self) -> int:
        return hash((self._dims, self._last_age_open))

    # ------------------------- layout -------------------------
    @property
    def dims(self) -> Tuple[Dimension, ...]:
        return self._dims

    @property
    def names(self) -> List[str]:
        return [d.name for d in self._dims]

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def strides(self) -> Tuple[int, ...]:
        return self._strides

    @property
    def length(self) -> int:
        return self._length

    @property
    def last_age_open(self) -> bool:
        return self._last_age_open

    def pos(self, name: str) -> int:
        """Return the position of a named dimension."""
        try:
            return self._pos[name]
        except KeyError:
            raise ValueError(f"Unknown dimension '{name}'; available: {self.names}") from None

    def has_dim(self, name: str) -> bool:
        return name in self._pos

    def positions_of(self, *kinds: DimKind) -> List[int]:
        """Return the positions of all dimensions whose kind is in `kinds`."""
        return [p for p, d in enumerate(self._dims) if d.kind in kinds]

    # ------------------------- time / age / triangle -------------------------
    @property
    def pos_time(self) -> int:
        return int(self._pos_time)  # type: ignore[arg-type]

    @property
    def n_time(self) -> int:
        return self._shape[self.pos_time]

    @property
    def step_time(self) -> int:
        return self._strides[self.pos_time]

    @property
    def has_age(self) -> bool:
        return self._pos_age is not None

    @property
    def pos_age(self) -> Optional[int]:
        return self._pos_age

    @property
    def n_age(self) -> int:
        return self._shape[self._pos_age] if self._pos_age is not None else 1

    @property
    def step_age(self) -> int:
        return self._strides[self._pos_age] if self._pos_age is not None else 0

    @property
    def has_triangle(self) -> bool:
        return self._pos_triangle is not None

    @property
    def pos_triangle(self) -> Optional[int]:
        return self._pos_triangle

    @property
    def step_triangle(self) -> int:
        return self._strides[self._pos_triangle] if self._pos_triangle is not None else 0

    @property
    def has_direction(self) -> bool:
        return self._pos_direction is not None

    @property
    def pos_direction(self) -> Optional[int]:
        return self._pos_direction

    @property
    def has_sex(self) -> bool:
        return any(d.kind == DimKind.SEX for d in self._dims)

    # ------------------------- offsets -------------------------
    def coord(self, i: int, pos: int) -> int:
        """Return the coordinate of flat offset i along dimension `pos`."""
        return (int(i) // self._strides[pos]) % self._shape[pos]

    def i_time(self, i: int) -> int:
        return self.coord(i, self.pos_time)

    def i_age(self, i: int) -> int:
        return self.coord(i, self._pos_age) if self._pos_age is not None else 0

    def i_triangle(self, i: int) -> int:
        return self.coord(i, self._pos_triangle) if self._pos_triangle is not None else LOWER

    def unravel(self, i: int) -> Tuple[int, ...]:
        """Convert a flat offset to a coordinate tuple."""
        i = int(i)
        if i < 0 or i >= self._length:
            raise ValueError(f"Offset {i} out of range for length {self._length}.")
        return tuple((i // s) % n for s, n in zip(self._strides, self._shape))

    def ravel(self, coords: Sequence[int]) -> int:
        """Convert a coordinate tuple to a flat offset."""
        if len(coords) != len(self._shape):
            raise ValueError(f"Expected {len(self._shape)} coordinates, got {len(coords)}.")
        out = 0
        for c, s, n in zip(coords, self._strides, self._shape):
            c = int(c)
            if c < 0 or c >= n:
                raise ValueError(f"Coordinate {c} out of range for length {n}.")
            out += c * s
        return out

    def with_coord(self, i: int, pos: int, value: int) -> int:
        """Return the offset of i with the coordinate along `pos` replaced."""
        return int(i) + (int(value) - self.coord(i, pos)) * self._strides[pos]

    def random_cell(self, rng: np.random.Generator, fixed: Optional[Mapping[int, int]] = None) -> int:
        """Draw a uniformly random cell, holding the coordinates in `fixed` constant."""
        fixed = fixed or {}
        out = 0
        for p, (s, n) in enumerate(zip(self._strides, self._shape)):
            c = fixed[p] if p in fixed else int(rng.integers(n))
            out += int(c) * s
        return out

    def reshape(self, values: Array) -> Array:
        """View a flat array with this description's shape."""
        return np.asarray(values).reshape(self._shape)


# -----------------------------------------------------------------------------
# Derived descriptions
# -----------------------------------------------------------------------------
def _replace_length(dims: Sequence[Dimension], kind: DimKind, delta: int) -> List[Dimension]:
    """Return dims with the length of the dimension of `kind` shifted by delta."""
    out: List[Dimension] = []
    for d in dims:
        if d.kind == kind:
            if d.length + delta < 1:
                raise ValueError(f"Dimension '{d.name}' is too short for this layout.")
            out.append(Dimension(d.name, d.kind, d.length + delta, d.base))
        else:
            out.append(d)
    return out


def exposure_description(popn: Description, *, triangle_name: str = "triangle") -> Description:
    """
    Description of the exposure array implied by a population description.

    Time points become periods (length - 1); a trailing Lexis triangle
    dimension is appended when the population has age.
    """
    dims = _replace_length(popn.dims, DimKind.TIME, -1)
    if popn.has_age:
        dims.append(Dimension(triangle_name, DimKind.TRIANGLE, 2))
    return Description(dims, last_age_open=popn.last_age_open)


def accession_description(popn: Description) -> Description:
    """
    Description of the accession array: periods by age transitions.

    accession[t, a] counts people moving from age group a to a + 1 during
    period t, so the age dimension loses its last category.
    """
    if not popn.has_age:
        raise ValueError("Accession is only defined for populations with age.")
    dims = _replace_length(popn.dims, DimKind.TIME, -1)
    dims = _replace_length(dims, DimKind.AGE, -1)
    return Description(dims, last_age_open=False)
