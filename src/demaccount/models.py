#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/models.py

"""
System models: the stochastic process behind each series of the account.

The account sampler only reads `theta` (cell-level rates or means), the
structural-zero mask and, for Normal models, `varsigma` and `w`. Fitting the
models is the business of `update`, which refreshes `theta` given the current
series (and exposure, for rate models). Two conjugate reference models are
provided:

- PoissonSystemModel:  y ~ Poisson(theta * exposure),  theta ~ Gamma(shape, rate)
- NormalSystemModel:   y ~ Normal(theta, varsigma^2 / w),  theta ~ Normal(m0, s0^2)

Entries of y that are NaN are treated as unobserved: their theta is drawn
from the prior. This is how draw_system_models produces prior draws without
touching the account.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from .densities import log_dnorm, log_dpois

Array = np.ndarray

__all__ = ["SystemModel", "PoissonSystemModel", "NormalSystemModel"]


def _as_mask(struc_zero: Optional[Array], n: int) -> Array:
    """Return a boolean structural-zero mask of length n."""
    if struc_zero is None:
        return np.zeros(n, dtype=bool)
    m = np.asarray(struc_zero, dtype=bool).reshape(-1)
    if m.size != n:
        raise ValueError(f"struc_zero has {m.size} entries, expected {n}.")
    return m.copy()


class SystemModel(ABC):
    """Interface consumed by the account sampler."""

    uses_exposure: bool = False

    def __init__(self, theta: Array, *, struc_zero: Optional[Array] = None) -> None:
        th = np.asarray(theta, dtype=np.float64).reshape(-1)
        if np.any(~np.isfinite(th)):
            raise ValueError("theta must contain finite values only.")
        self.theta = th.copy()
        self.struc_zero = _as_mask(struc_zero, th.size)

    @property
    def n_cells(self) -> int:
        return int(self.theta.size)

    def is_struc_zero(self, i: int) -> bool:
        return bool(self.struc_zero[i])

    @abstractmethod
    def update(self, y: Array, exposure: Optional[Array], rng: np.random.Generator) -> None:
        """Refresh theta given the series y (NaN = unobserved)."""

    @abstractmethod
    def log_density(self, y: Array, exposure: Optional[Array] = None) -> float:
        """Log density of the whole series given the current theta."""


class PoissonSystemModel(SystemModel):
    """
    Poisson rate model with a conjugate Gamma prior on each cell rate.

    Parameters
    ----------
    theta:
        Initial rates (one per cell).
    uses_exposure:
        When True, y ~ Poisson(theta * exposure); otherwise y ~ Poisson(theta).
    struc_zero:
        Boolean mask of structural zeros; their theta is held at 0.
    shape, rate:
        Gamma prior hyper-parameters.
    """

    def __init__(
        self,
        theta: Array,
        *,
        uses_exposure: bool = False,
        struc_zero: Optional[Array] = None,
        shape: float = 1.0,
        rate: float = 1.0,
    ) -> None:
        super().__init__(theta, struc_zero=struc_zero)
        if np.any(self.theta < 0.0):
            raise ValueError("Poisson rates must be non-negative.")
        self.uses_exposure = bool(uses_exposure)
        self.shape = float(shape)
        self.rate = float(rate)
        if not (self.shape > 0.0 and self.rate > 0.0):
            raise ValueError("Gamma prior requires shape > 0 and rate > 0.")
        self.theta[self.struc_zero] = 0.0

    def _exposure_or_ones(self, exposure: Optional[Array]) -> Array:
        if not self.uses_exposure:
            return np.ones(self.n_cells, dtype=np.float64)
        if exposure is None:
            raise ValueError("This model uses exposure but none was supplied.")
        e = np.asarray(exposure, dtype=np.float64).reshape(-1)
        if e.size != self.n_cells:
            raise ValueError(f"Exposure has {e.size} cells, expected {self.n_cells}.")
        return np.maximum(e, 0.0)

    def update(self, y: Array, exposure: Optional[Array], rng: np.random.Generator) -> None:
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        e = self._exposure_or_ones(exposure)
        obs = ~np.isnan(y)
        shape = self.shape + np.where(obs, y, 0.0)
        rate = self.rate + np.where(obs, e, 0.0)
        theta = rng.gamma(shape, 1.0 / rate)
        theta[self.struc_zero] = 0.0
        self.theta = theta

    def log_density(self, y: Array, exposure: Optional[Array] = None) -> float:
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        e = self._exposure_or_ones(exposure)
        total = 0.0
        for i in range(self.n_cells):
            if np.isnan(y[i]) or self.struc_zero[i]:
                continue
            total += log_dpois(float(y[i]), float(self.theta[i] * e[i]))
        return float(total)


class NormalSystemModel(SystemModel):
    """
    Normal model for signed (net) series.

    Parameters
    ----------
    theta:
        Initial cell means.
    varsigma:
        Observation-level standard deviation.
    w:
        Cell weights; the cell sd is varsigma / sqrt(w).
    struc_zero:
        Boolean mask of structural zeros; their theta is held at 0.
    prior_mean, prior_sd:
        Normal prior on each cell mean.
    """

    uses_exposure = False

    def __init__(
        self,
        theta: Array,
        *,
        varsigma: float = 1.0,
        w: Optional[Array] = None,
        struc_zero: Optional[Array] = None,
        prior_mean: float = 0.0,
        prior_sd: float = 10.0,
    ) -> None:
        super().__init__(theta, struc_zero=struc_zero)
        self.varsigma = float(varsigma)
        if not (np.isfinite(self.varsigma) and self.varsigma > 0.0):
            raise ValueError("varsigma must be positive and finite.")
        if w is None:
            self.w = np.ones(self.n_cells, dtype=np.float64)
        else:
            self.w = np.asarray(w, dtype=np.float64).reshape(-1).copy()
            if self.w.size != self.n_cells or np.any(~(self.w > 0.0)):
                raise ValueError("w must hold one positive weight per cell.")
        self.prior_mean = float(prior_mean)
        self.prior_sd = float(prior_sd)
        if not (self.prior_sd > 0.0):
            raise ValueError("prior_sd must be positive.")
        self.theta[self.struc_zero] = 0.0

    def sd(self, i: int) -> float:
        """Standard deviation of cell i."""
        return self.varsigma / float(np.sqrt(self.w[i]))

    def update(self, y: Array, exposure: Optional[Array], rng: np.random.Generator) -> None:
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        obs = ~np.isnan(y)
        prec_prior = 1.0 / self.prior_sd ** 2
        prec_data = np.where(obs, self.w / self.varsigma ** 2, 0.0)
        prec = prec_prior + prec_data
        mean = (prec_prior * self.prior_mean + prec_data * np.where(obs, y, 0.0)) / prec
        theta = mean + rng.standard_normal(self.n_cells) / np.sqrt(prec)
        theta[self.struc_zero] = 0.0
        self.theta = theta

    def log_density(self, y: Array, exposure: Optional[Array] = None) -> float:
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        total = 0.0
        for i in range(self.n_cells):
            if np.isnan(y[i]) or self.struc_zero[i]:
                continue
            total += log_dnorm(float(y[i]), float(self.theta[i]), self.sd(i))
        return float(total)
