"""Tests for collapse transforms and data models."""

from __future__ import annotations

import math

import numpy as np
import pytest
from scipy import stats

from demaccount.description import Description, Dimension
from demaccount.observation import (
    BinomialDataModel,
    CMPDataModel,
    CollapseTransform,
    NormalDataModel,
    PoissonDataModel,
)

DESC = Description([Dimension("time", "time", 2), Dimension("region", "state", 3)])


def test_collapse_over_dimension() -> None:
    """Collapsing sums over the dropped dimensions."""
    t = CollapseTransform.from_description(DESC, keep=["region"])
    assert t.n_before == 6 and t.n_after == 3
    values = np.arange(6)
    assert list(t.collapse(values)) == [3.0, 5.0, 7.0]
    assert list(t.get_i_before(1)) == [1, 4]
    assert t.get_i_after(4) == 1


def test_collapse_with_subset() -> None:
    """Cells outside the subset are unobserved."""
    t = CollapseTransform.from_description(DESC, keep=["time"], subset={"region": [0, 2]})
    assert t.n_after == 2
    assert t.get_i_after(DESC.ravel((1, 1))) is None
    assert list(t.collapse(np.arange(6))) == [2.0, 8.0]


def test_identity_and_validation() -> None:
    """The identity transform maps cells to themselves; bad maps are rejected."""
    t = CollapseTransform.identity(4)
    assert [t.get_i_after(i) for i in range(4)] == [0, 1, 2, 3]
    with pytest.raises(ValueError):
        CollapseTransform(np.array([0, 3]), 2)
    with pytest.raises(ValueError):
        CollapseTransform.from_description(DESC, keep=["age"])


def test_data_model_log_likelihoods() -> None:
    """Each data model scores the observed cell against the collapsed count."""
    dataset = np.array([7.0, np.nan])
    pois = PoissonDataModel(np.array([0.5, 1.0]))
    assert pois.log_likelihood(10.0, dataset, 0) == pytest.approx(stats.poisson.logpmf(7, 5.0))
    binom = BinomialDataModel(np.array([0.5, 0.5]))
    assert binom.log_likelihood(10.0, dataset, 0) == pytest.approx(stats.binom.logpmf(7, 10, 0.5))
    assert binom.log_likelihood(6.0, dataset, 0) == -math.inf
    norm = NormalDataModel(np.array([1.0, 1.0]), sd=2.0)
    assert norm.log_likelihood(8.0, dataset, 0) == pytest.approx(stats.norm.logpdf(7, 8, 2))
    cmp_model = CMPDataModel(np.array([1.0, 1.0]), nu=1.0)
    assert cmp_model.log_likelihood(6.0, dataset, 0) == pytest.approx(stats.poisson.logpmf(7, 6.0), rel=1e-8)
    for model in (pois, binom, norm, cmp_model):
        assert model.log_likelihood(-1.0, dataset, 0) == -math.inf


def test_total_log_likelihood_skips_missing() -> None:
    """Missing observations contribute nothing."""
    dataset = np.array([7.0, np.nan])
    model = PoissonDataModel(np.array([1.0, 1.0]))
    total = model.total_log_likelihood(np.array([6.0, 100.0]), dataset)
    assert total == pytest.approx(stats.poisson.logpmf(7, 6.0))


def test_conjugate_updates_stay_in_range() -> None:
    """Conjugate refreshes keep rates positive and probabilities in [0, 1]."""
    rng = np.random.default_rng(0)
    dataset = np.array([7.0, np.nan])
    binom = BinomialDataModel(np.array([0.5, 0.5]))
    binom.update(np.array([10.0, 4.0]), dataset, rng)
    assert np.all((binom.theta >= 0.0) & (binom.theta <= 1.0))
    pois = PoissonDataModel(np.array([1.0, 1.0]))
    pois.update(np.array([10.0, 4.0]), dataset, rng)
    assert np.all(pois.theta > 0.0)
