#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/observation.py

"""
Observation layer: datasets, their data models and collapse transforms.

Each dataset observes one series of the account through a Transform that
maps account cells ("before") to dataset cells ("after"). Several account
cells may collapse onto one dataset cell; cells that no dataset cell observes
map to None. Datasets are float arrays in which NaN marks a cell without data.

Data models
-----------
- PoissonDataModel:   y ~ Poisson(theta * count)
- BinomialDataModel:  y ~ Binomial(count, theta)
- NormalDataModel:    y ~ Normal(theta * count, sd)
- CMPDataModel:       y ~ CMP(theta * count, nu)

log_likelihood(count, dataset, i_after) never raises: impossible counts
(negative, or incompatible with the observation) give -inf.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from .densities import log_dbinom, log_dcmp, log_dnorm, log_dpois
from .description import Description

Array = np.ndarray

__all__ = [
    "Transform",
    "CollapseTransform",
    "DataModel",
    "PoissonDataModel",
    "BinomialDataModel",
    "NormalDataModel",
    "CMPDataModel",
]


# -----------------------------------------------------------------------------
# Transforms
# -----------------------------------------------------------------------------
class Transform(ABC):
    """Index mapping from account cells to dataset cells."""

    @property
    @abstractmethod
    def n_before(self) -> int:
        """Number of account cells."""

    @property
    @abstractmethod
    def n_after(self) -> int:
        """Number of dataset cells."""

    @abstractmethod
    def get_i_after(self, i_before: int) -> Optional[int]:
        """Dataset cell observing account cell i_before, or None."""

    @abstractmethod
    def get_i_before(self, i_after: int) -> Array:
        """Account cells collapsing onto dataset cell i_after."""

    def collapse(self, values: Array) -> Array:
        """Sum account values onto the dataset layout."""
        v = np.asarray(values, dtype=np.float64).reshape(-1)
        out = np.zeros(self.n_after, dtype=np.float64)
        for i_after in range(self.n_after):
            out[i_after] = float(np.sum(v[self.get_i_before(i_after)]))
        return out


class CollapseTransform(Transform):
    """
    Transform given by an explicit vector `after_of_before` (-1 = unobserved).

    Constructors
    ------------
    identity(n):
        One dataset cell per account cell.
    from_description(description, keep, subset):
        Keep the named dimensions and sum over the rest; `subset` optionally
        restricts dimensions (kept or not) to a list of categories, cells
        outside the subset being unobserved.
    """

    def __init__(self, after_of_before: Array, n_after: int) -> None:
        a = np.asarray(after_of_before, dtype=np.int64).reshape(-1)
        n_after = int(n_after)
        if np.any(a < -1) or np.any(a >= n_after):
            raise ValueError("after_of_before entries must lie in [-1, n_after).")
        self._after = a.copy()
        self._n_after = n_after
        self._before: List[Array] = [np.flatnonzero(a == k) for k in range(n_after)]

    @staticmethod
    def identity(n: int) -> "CollapseTransform":
        return CollapseTransform(np.arange(int(n), dtype=np.int64), int(n))

    @staticmethod
    def from_description(
        description: Description,
        keep: Sequence[str],
        subset: Optional[Mapping[str, Sequence[int]]] = None,
    ) -> "CollapseTransform":
        subset = dict(subset or {})
        for name in list(keep) + list(subset):
            description.pos(name)
        keep_pos = [description.pos(n) for n in keep]
        # categories of each kept dimension, in subset order when restricted
        cats: Dict[int, List[int]] = {}
        for p in keep_pos:
            name = description.dims[p].name
            cats[p] = [int(c) for c in subset.get(name, range(description.shape[p]))]
        allowed: Dict[int, set] = {description.pos(n): set(int(c) for c in v) for n, v in subset.items()}
        after_shape = [len(cats[p]) for p in keep_pos]
        after_strides = [1] * len(after_shape)
        for k in range(len(after_shape) - 2, -1, -1):
            after_strides[k] = after_strides[k + 1] * after_shape[k + 1]
        n_after = int(np.prod(after_shape)) if after_shape else 1

        out = np.full(description.length, -1, dtype=np.int64)
        for i in range(description.length):
            coords = description.unravel(i)
            if any(coords[p] not in allowed_p for p, allowed_p in allowed.items()):
                continue
            j = 0
            for k, p in enumerate(keep_pos):
                j += cats[p].index(coords[p]) * after_strides[k]
            out[i] = j
        return CollapseTransform(out, n_after)

    @property
    def n_before(self) -> int:
        return int(self._after.size)

    @property
    def n_after(self) -> int:
        return self._n_after

    def get_i_after(self, i_before: int) -> Optional[int]:
        j = int(self._after[i_before])
        return None if j < 0 else j

    def get_i_before(self, i_after: int) -> Array:
        return self._before[int(i_after)]


# -----------------------------------------------------------------------------
# Data models
# -----------------------------------------------------------------------------
class DataModel(ABC):
    """Likelihood of a dataset given the collapsed account series."""

    def __init__(self, theta: Array) -> None:
        th = np.asarray(theta, dtype=np.float64).reshape(-1)
        if np.any(~np.isfinite(th)):
            raise ValueError("theta must contain finite values only.")
        self.theta = th.copy()

    @property
    def n_cells(self) -> int:
        return int(self.theta.size)

    @abstractmethod
    def log_likelihood(self, count: float, dataset: Array, i_after: int) -> float:
        """Log likelihood of dataset[i_after] given the collapsed count."""

    def update(self, collapsed: Array, dataset: Array, rng: np.random.Generator) -> None:
        """Refresh model parameters given the collapsed series; fixed by default."""
        return None

    def total_log_likelihood(self, collapsed: Array, dataset: Array) -> float:
        """Sum of log_likelihood over observed dataset cells."""
        total = 0.0
        for i_after in range(dataset.size):
            if np.isnan(dataset[i_after]):
                continue
            total += self.log_likelihood(float(collapsed[i_after]), dataset, i_after)
        return float(total)


class PoissonDataModel(DataModel):
    """y ~ Poisson(theta * count) with a conjugate Gamma(shape, rate) prior on theta."""

    def __init__(self, theta: Array, *, shape: float = 1.0, rate: float = 1.0) -> None:
        super().__init__(theta)
        if np.any(self.theta < 0.0):
            raise ValueError("Poisson data-model rates must be non-negative.")
        self.shape = float(shape)
        self.rate = float(rate)

    def log_likelihood(self, count: float, dataset: Array, i_after: int) -> float:
        if count < 0:
            return -math.inf
        return float(log_dpois(float(dataset[i_after]), float(self.theta[i_after] * count)))

    def update(self, collapsed: Array, dataset: Array, rng: np.random.Generator) -> None:
        y = np.asarray(dataset, dtype=np.float64)
        obs = ~np.isnan(y)
        shape = self.shape + np.where(obs, y, 0.0)
        rate = self.rate + np.where(obs, np.maximum(collapsed, 0.0), 0.0)
        self.theta = rng.gamma(shape, 1.0 / rate)


class BinomialDataModel(DataModel):
    """y ~ Binomial(count, theta) with a conjugate Beta(a, b) prior on theta."""

    def __init__(self, theta: Array, *, a: float = 1.0, b: float = 1.0) -> None:
        super().__init__(theta)
        if np.any((self.theta < 0.0) | (self.theta > 1.0)):
            raise ValueError("Binomial data-model probabilities must lie in [0, 1].")
        self.a = float(a)
        self.b = float(b)

    def log_likelihood(self, count: float, dataset: Array, i_after: int) -> float:
        if count < 0:
            return -math.inf
        return float(log_dbinom(float(dataset[i_after]), float(count), float(self.theta[i_after])))

    def update(self, collapsed: Array, dataset: Array, rng: np.random.Generator) -> None:
        y = np.asarray(dataset, dtype=np.float64)
        n = np.maximum(np.asarray(collapsed, dtype=np.float64), 0.0)
        obs = ~np.isnan(y) & (y <= n)
        a = self.a + np.where(obs, y, 0.0)
        b = self.b + np.where(obs, n - np.where(obs, y, 0.0), 0.0)
        self.theta = rng.beta(a, b)


class NormalDataModel(DataModel):
    """y ~ Normal(theta * count, sd) with theta held fixed."""

    def __init__(self, theta: Array, *, sd: Array) -> None:
        super().__init__(theta)
        s = np.broadcast_to(np.asarray(sd, dtype=np.float64), self.theta.shape).copy()
        if np.any(~(s > 0.0)):
            raise ValueError("sd must be positive.")
        self.sd = s

    def log_likelihood(self, count: float, dataset: Array, i_after: int) -> float:
        if count < 0:
            return -math.inf
        mean = float(self.theta[i_after] * count)
        return float(log_dnorm(float(dataset[i_after]), mean, float(self.sd[i_after])))


class CMPDataModel(DataModel):
    """y ~ Conway-Maxwell-Poisson(theta * count, nu) with parameters held fixed."""

    def __init__(self, theta: Array, *, nu: Array) -> None:
        super().__init__(theta)
        n = np.broadcast_to(np.asarray(nu, dtype=np.float64), self.theta.shape).copy()
        if np.any(~(n > 0.0)):
            raise ValueError("nu must be positive.")
        self.nu = n

    def log_likelihood(self, count: float, dataset: Array, i_after: int) -> float:
        if count < 0:
            return -math.inf
        gamma = float(self.theta[i_after] * count)
        return float(log_dcmp(float(dataset[i_after]), gamma, float(self.nu[i_after])))
