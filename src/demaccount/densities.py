#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# src/demaccount/densities.py

"""
Probability primitives used by the account sampler.

Log densities
-------------
log_dpois(x, lam), log_dnorm(x, mean, sd), log_dbinom(x, size, prob) and
log_dcmp(x, gamma, nu) are compiled with Numba. They never raise: impossible
arguments (negative or non-integer counts, x > size, zero rate with positive
count) give -inf, so callers can treat structural infeasibility as an
ordinary rejection.

Truncated draws
---------------
rpois_trunc1 and rnorm_int_trunc1 draw a single integer from a truncated
Poisson or a discretised truncated Normal. They return None when the
truncation region is empty or carries no probability mass, which the
proposal generator reports as "no proposal generated".
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np
from numba import njit
from scipy import stats

__all__ = [
    "log_dpois",
    "log_dnorm",
    "log_dbinom",
    "log_dcmp",
    "rpois_trunc1",
    "rnorm_int_trunc1",
]


_LOG_2PI = math.log(2.0 * math.pi)


# -----------------------------------------------------------------------------
# Log densities (Numba)
# -----------------------------------------------------------------------------
@njit(cache=True)
def log_dpois(x: float, lam: float) -> float:
    """Poisson log mass at x with mean lam."""
    if x < 0.0 or x != math.floor(x) or lam < 0.0 or math.isnan(lam):
        return -math.inf
    if lam == 0.0:
        return 0.0 if x == 0.0 else -math.inf
    if math.isinf(lam):
        return -math.inf
    return x * math.log(lam) - lam - math.lgamma(x + 1.0)


@njit(cache=True)
def log_dnorm(x: float, mean: float, sd: float) -> float:
    """Normal log density at x."""
    if not (sd > 0.0) or math.isinf(sd):
        return -math.inf
    z = (x - mean) / sd
    return -0.5 * z * z - math.log(sd) - 0.5 * _LOG_2PI


@njit(cache=True)
def log_dbinom(x: float, size: float, prob: float) -> float:
    """Binomial log mass at x for `size` trials with success probability prob."""
    if x < 0.0 or size < 0.0 or x > size or x != math.floor(x) or size != math.floor(size):
        return -math.inf
    if prob < 0.0 or prob > 1.0 or math.isnan(prob):
        return -math.inf
    if prob == 0.0:
        return 0.0 if x == 0.0 else -math.inf
    if prob == 1.0:
        return 0.0 if x == size else -math.inf
    log_choose = math.lgamma(size + 1.0) - math.lgamma(x + 1.0) - math.lgamma(size - x + 1.0)
    return log_choose + x * math.log(prob) + (size - x) * math.log1p(-prob)


@njit(cache=True)
def log_dcmp(x: float, gamma: float, nu: float, max_terms: int = 1000) -> float:
    """
    Conway-Maxwell-Poisson log mass at x.

    The normalising series sum_k gamma^k / (k!)^nu is truncated once terms
    fall below 1e-12 of the running maximum, or after max_terms terms.
    """
    if x < 0.0 or x != math.floor(x) or gamma < 0.0 or not (nu > 0.0):
        return -math.inf
    if gamma == 0.0:
        return 0.0 if x == 0.0 else -math.inf
    log_gamma = math.log(gamma)
    # log-sum-exp over the series, accumulated relative to the running maximum
    m = 0.0
    s = 1.0
    for k in range(1, max_terms):
        term = k * log_gamma - nu * math.lgamma(k + 1.0)
        if term > m:
            s = s * math.exp(m - term) + 1.0
            m = term
        else:
            s += math.exp(term - m)
        if term < m - 27.6 and k > gamma:
            break
    log_z = m + math.log(s)
    return x * log_gamma - nu * math.lgamma(x + 1.0) - log_z


# -----------------------------------------------------------------------------
# Truncated draws
# -----------------------------------------------------------------------------
def rpois_trunc1(
    rng: np.random.Generator,
    lam: float,
    lower: Optional[int],
    upper: Optional[int],
    *,
    max_attempt: int,
) -> Optional[int]:
    """
    Draw one value from Poisson(lam) truncated to [lower, upper].

    `lower` below zero is raised to zero and None means unbounded. Plain
    rejection is tried max_attempt times before falling back to CDF inversion
    (or, in the tails, a draw over the log mass near the truncation point).
    Returns None when the truncation region is empty.
    """
    lo = 0 if lower is None else max(0, int(lower))
    hi = None if upper is None else int(upper)
    if hi is not None and hi < lo:
        return None
    lam = float(lam)
    if not np.isfinite(lam) or lam < 0.0:
        return None
    if lam == 0.0:
        return 0 if lo == 0 else None

    for _ in range(int(max_attempt)):
        x = int(rng.poisson(lam))
        if x >= lo and (hi is None or x <= hi):
            return x

    if lo > lam or (hi is not None and hi < lam):
        # tail regions: draw from the log mass on a bounded support next to the
        # truncation point, where the pmf is monotone
        width = int(10.0 * math.sqrt(lam)) + 20
        if lo > lam:
            top = lo + width if hi is None else min(hi, lo + width)
            ks = np.arange(lo, top + 1)
        else:
            ks = np.arange(max(lo, hi - width), hi + 1)  # type: ignore[operator]
        logp = stats.poisson.logpmf(ks, lam)
        w = np.exp(logp - np.max(logp))
        return int(rng.choice(ks, p=w / w.sum()))

    p_lo = float(stats.poisson.cdf(lo - 1, lam))
    p_hi = 1.0 if hi is None else float(stats.poisson.cdf(hi, lam))
    if not p_hi > p_lo:
        return None
    x = int(stats.poisson.ppf(rng.uniform(p_lo, p_hi), lam))
    x = max(lo, x)
    if hi is not None:
        x = min(hi, x)
    return x


def rnorm_int_trunc1(
    rng: np.random.Generator,
    mean: float,
    sd: float,
    lower: Optional[int],
    upper: Optional[int],
) -> Optional[int]:
    """
    Draw one integer from Normal(mean, sd) truncated to [lower, upper] and rounded.

    None bounds are unbounded. Returns None for an empty interval or sd <= 0.
    """
    if not (sd > 0.0) or not np.isfinite(mean):
        return None
    if lower is not None and upper is not None and int(lower) > int(upper):
        return None
    lo = -np.inf if lower is None else (int(lower) - 0.5 - mean) / sd
    hi = np.inf if upper is None else (int(upper) + 0.5 - mean) / sd
    if not hi > lo:
        return None
    x = float(stats.truncnorm.rvs(lo, hi, loc=mean, scale=sd, random_state=rng))
    out = int(round(x))
    if lower is not None:
        out = max(int(lower), out)
    if upper is not None:
        out = min(int(upper), out)
    return out
