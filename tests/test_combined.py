"""Tests for the account sampler: proposals, acceptance scores and commits."""

from __future__ import annotations

import math

import numpy as np
import pytest
from scipy import stats

from demaccount import commit, proposals
from demaccount.account import Account, Component
from demaccount.combined import CombinedAccount, UpdateSettings
from demaccount.description import UPPER, Description, Dimension
from demaccount.mappings import ComponentRole
from demaccount.models import NormalSystemModel, PoissonSystemModel
from demaccount.observation import BinomialDataModel, CollapseTransform, PoissonDataModel
from demaccount.proposals import Proposal


def _snapshot(combined: CombinedAccount) -> list:
    account = combined.account
    arrays = [account.population] + [c.values for c in account.components]
    if account.accession is not None:
        arrays.append(account.accession)
    arrays += [combined.exposure, combined.expected_exposure]
    return [np.array(a, copy=True) for a in arrays]


def _same(a: list, b: list) -> bool:
    return len(a) == len(b) and all(np.array_equal(x, y) for x, y in zip(a, b))


def _proposals(combined: CombinedAccount, n: int):
    """Yield up to n generated proposals (skipping steps that produce none)."""
    for _ in range(n):
        proposal = combined.update_proposal_account()
        if proposal is not None:
            yield proposal


def _births_no_age(theta_births: float = 2.0):
    """One-region account without age: P = [1, 6] and 5 births."""
    popn_desc = Description([Dimension("time", "time", 2)])
    births_desc = Description([Dimension("time", "time", 1)])
    births = Component("births", np.array([5]), births_desc, role=ComponentRole.BIRTHS)
    account = Account(np.array([1, 6]), popn_desc, [births])
    system_models = [PoissonSystemModel(np.array([3.0, 6.0])), PoissonSystemModel(np.array([theta_births]))]
    return account, system_models


# -----------------------------------------------------------------------------
# Settings and construction
# -----------------------------------------------------------------------------
def test_settings_validation() -> None:
    """Out-of-range settings and component weights are rejected."""
    with pytest.raises(ValueError):
        UpdateSettings(prob_popn=1.5).validate(2)
    with pytest.raises(ValueError):
        UpdateSettings(prob_small_update=-0.1).validate(2)
    with pytest.raises(ValueError):
        UpdateSettings(max_attempt=0).validate(2)
    with pytest.raises(ValueError):
        UpdateSettings(comp_weights=[1.0]).validate(2)
    with pytest.raises(ValueError):
        UpdateSettings(comp_weights=[0.0, 0.0]).validate(2)
    cum = UpdateSettings(comp_weights=[1.0, 3.0]).cum_prob_comp(2)
    assert list(cum) == pytest.approx([0.25, 1.0])


def test_combined_validation(orig_dest_account, pool_net_account) -> None:
    """Mismatched models, net roles and observation layouts are rejected."""
    models = [PoissonSystemModel(np.ones(9)), PoissonSystemModel(np.ones(6))]
    with pytest.raises(ValueError):
        CombinedAccount(orig_dest_account, models)
    bad_net = [
        PoissonSystemModel(np.ones(9)),
        PoissonSystemModel(np.ones(6), uses_exposure=True),
        PoissonSystemModel(np.ones(12)),
        PoissonSystemModel(np.ones(6)),
    ]
    with pytest.raises(ValueError):
        CombinedAccount(pool_net_account, bad_net)
    good = bad_net[:3] + [NormalSystemModel(np.zeros(6))]
    with pytest.raises(ValueError):
        CombinedAccount(
            pool_net_account,
            good,
            [PoissonDataModel(np.ones(3))],
            [np.ones(2)],
            [CollapseTransform.identity(9)],
            [0],
        )


# -----------------------------------------------------------------------------
# Log-likelihood
# -----------------------------------------------------------------------------
def test_births_scenario_without_age() -> None:
    """Adding one birth moves P[1] from 6 to 7, which the population dataset observed."""
    account, system_models = _births_no_age()
    combined = CombinedAccount(
        account,
        system_models,
        [PoissonDataModel(np.ones(2))],
        [np.array([1.0, 7.0])],
        [CollapseTransform.identity(2)],
        [0],
        rng=np.random.default_rng(0),
    )
    mapping = account.mappings[0]
    proposal = Proposal(
        i_comp=1,
        role=ComponentRole.BIRTHS,
        i_cell=0,
        diff=1,
        i_popn_next=mapping.i_popn_next(0),
        i_exp_first=mapping.i_exp_first(0),
    )
    expected = stats.poisson.logpmf(7, 7.0) - stats.poisson.logpmf(7, 6.0)
    diff = combined.diff_log_lik_account(proposal)
    assert diff == pytest.approx(expected)
    assert diff > 0.0


def test_impossible_dataset_short_circuits() -> None:
    """One dataset scoring -inf makes the whole change -inf."""
    account, system_models = _births_no_age()
    combined = CombinedAccount(
        account,
        system_models,
        [PoissonDataModel(np.ones(2)), BinomialDataModel(np.array([0.5]))],
        [np.array([1.0, 7.0]), np.array([9.0])],
        [CollapseTransform.identity(2), CollapseTransform.identity(1)],
        [0, 1],
        rng=np.random.default_rng(0),
    )
    mapping = account.mappings[0]
    proposal = Proposal(
        i_comp=1, role=ComponentRole.BIRTHS, i_cell=0, diff=1,
        i_popn_next=mapping.i_popn_next(0), i_exp_first=mapping.i_exp_first(0),
    )
    assert combined.diff_log_lik_account(proposal) == -math.inf


def test_diff_log_lik_matches_full_recomputation(make_combined) -> None:
    """The incremental log-likelihood change equals full recomputation."""
    combined = make_combined(seed=3)
    n_checked = 0
    for proposal in _proposals(combined, 300):
        diff = combined.diff_log_lik_account(proposal)
        if not math.isfinite(diff):
            continue
        before = combined.log_likelihood()
        combined.update_values_account(proposal)
        after = combined.log_likelihood()
        assert after - before == pytest.approx(diff, abs=1e-8)
        n_checked += 1
    assert n_checked > 0


# -----------------------------------------------------------------------------
# Log-density
# -----------------------------------------------------------------------------
def test_structural_zero_gives_minus_inf_without_mutation() -> None:
    """Structural zeros are never filled and scoring never mutates the account."""
    popn_desc = Description([Dimension("time", "time", 2), Dimension("region", "state", 2)])
    births_desc = Description([Dimension("time", "time", 1), Dimension("region", "state", 2)])
    births = Component("births", np.array([3, 0]), births_desc, role=ComponentRole.BIRTHS)
    account = Account(np.array([10, 10, 13, 10]), popn_desc, [births])
    combined = CombinedAccount(
        account,
        [PoissonSystemModel(np.full(4, 10.0)), PoissonSystemModel(np.array([3.0, 3.0]), struc_zero=[False, True])],
        rng=np.random.default_rng(0),
        settings=UpdateSettings(prob_popn=0.0),
    )
    mapping = account.mappings[0]
    proposal = Proposal(
        i_comp=1, role=ComponentRole.BIRTHS, i_cell=1, diff=2,
        i_popn_next=mapping.i_popn_next(1), i_exp_first=mapping.i_exp_first(1),
    )
    before = _snapshot(combined)
    assert combined.diff_log_dens_account(proposal) == -math.inf
    assert _same(before, _snapshot(combined))

    combined.update_account(200)
    assert account.components[0].values[1] == 0
    assert account.is_consistent()


def test_reversibility(make_combined) -> None:
    """After committing a proposal, its inverse scores the exact opposite change."""
    combined = make_combined(seed=5)
    n_checked = 0
    for proposal in _proposals(combined, 300):
        d_lik = combined.diff_log_lik_account(proposal)
        d_dens = combined.diff_log_dens_account(proposal)
        if not (math.isfinite(d_lik) and math.isfinite(d_dens)):
            continue
        combined.update_values_account(proposal)
        inverse = proposal.inverse()
        assert combined.diff_log_lik_account(inverse) == pytest.approx(-d_lik, abs=1e-8)
        assert combined.diff_log_dens_account(inverse) == pytest.approx(-d_dens, abs=1e-8)
        n_checked += 1
    assert n_checked > 0


def test_population_jump_cancels_prior_at_first_cell() -> None:
    """Without exposure or data, a population move scores only the later cohort cells."""
    account, system_models = _births_no_age()
    combined = CombinedAccount(account, system_models, rng=np.random.default_rng(0))
    proposal = Proposal(
        i_comp=0, role=None, i_cell=0, diff=2, i_popn_next=0,
        i_exp_first=account.population_mapping.i_exp_first(0),
    )
    expected = stats.poisson.logpmf(8, 6.0) - stats.poisson.logpmf(6, 6.0)
    assert combined.diff_log_dens_account(proposal) == pytest.approx(expected)


def test_population_move_without_prior_scores_only_exposure() -> None:
    """Without the population prior and without exposure users, a population move is free."""
    account, system_models = _births_no_age()
    combined = CombinedAccount(
        account,
        system_models,
        settings=UpdateSettings(use_prior_popn=False),
        rng=np.random.default_rng(0),
    )
    proposal = Proposal(
        i_comp=0, role=None, i_cell=0, diff=2, i_popn_next=0,
        i_exp_first=account.population_mapping.i_exp_first(0),
    )
    assert combined.diff_log_dens_account(proposal) == 0.0


def test_first_population_follows_theta_without_prior() -> None:
    """With no prior and no data, the first-period population is distributed as Poisson(theta)."""
    account, system_models = _births_no_age()
    combined = CombinedAccount(
        account,
        system_models,
        settings=UpdateSettings(prob_popn=0.5, use_prior_popn=False),
        rng=np.random.default_rng(21),
    )
    draws = []
    for _ in range(300):
        combined.update_account(20)
        draws.append(int(account.population[0]))
    assert abs(np.mean(draws) - 3.0) < 0.5
    assert np.quantile(draws, 0.99) <= 10
    assert account.is_consistent()


# -----------------------------------------------------------------------------
# Commits
# -----------------------------------------------------------------------------
def test_update_account_keeps_account_consistent(make_combined) -> None:
    """Many sampler steps keep the identity, accession and exposure current."""
    combined = make_combined(seed=11)
    stats_ = combined.update_account(400)
    assert stats_.n_generated > 0
    assert stats_.n_accepted > 0
    assert combined.account.is_consistent()
    assert combined.exposure_is_current()


def test_small_update_is_local(make_age_combined) -> None:
    """A small update moves the two component cells and one accession cell only."""
    combined = make_age_combined(seed=2)
    account = combined.account
    for i_comp in (1, 2, 3):
        for _ in range(50):
            proposal = proposals.propose_small(combined, i_comp)
            if proposal is None:
                continue
            popn = account.population.copy()
            acc = account.accession.copy()
            expo = combined.exposure.copy()
            expected_expo = combined.expected_exposure.copy()
            commit.update_values_account(combined, proposal)
            assert np.array_equal(account.population, popn)
            assert np.array_equal(combined.exposure, expo)
            assert np.array_equal(combined.expected_exposure, expected_expo)
            changed = np.flatnonzero(account.accession != acc)
            assert len(changed) <= 1
            assert account.is_consistent()
    assert combined.exposure_is_current()


def test_births_small_update_needs_two_fertile_ages(make_age_combined) -> None:
    """Births are only possible at age 1, so no pair of cells can be moved."""
    combined = make_age_combined(seed=4)
    assert all(proposals.propose_small(combined, 1) is None for _ in range(20))


def test_every_layout_starts_feasible(make_combined) -> None:
    """Each test account starts consistent with a finite likelihood and density."""
    combined = make_combined(seed=0)
    assert combined.account.is_consistent()
    assert combined.exposure_is_current()
    assert math.isfinite(combined.log_likelihood())
    assert math.isfinite(combined.log_density())


def test_invariants_hold_after_every_accepted_step(make_combined) -> None:
    """Every accepted move matches full recomputation and is undone by its inverse."""
    combined = make_combined(seed=17)
    rng = np.random.default_rng(99)
    n_accepted = 0
    for proposal in _proposals(combined, 400):
        d_lik = combined.diff_log_lik_account(proposal)
        if not math.isfinite(d_lik):
            continue
        d_dens = combined.diff_log_dens_account(proposal)
        if not math.isfinite(d_dens) or rng.uniform() >= math.exp(min(0.0, d_lik + d_dens)):
            continue
        before = combined.log_likelihood()
        combined.update_values_account(proposal)
        assert combined.log_likelihood() - before == pytest.approx(d_lik, abs=1e-8)
        assert combined.account.is_consistent()
        assert combined.exposure_is_current()
        inverse = proposal.inverse()
        assert combined.diff_log_lik_account(inverse) == pytest.approx(-d_lik, abs=1e-8)
        assert combined.diff_log_dens_account(inverse) == pytest.approx(-d_dens, abs=1e-8)
        n_accepted += 1
    assert n_accepted > 0


@pytest.mark.parametrize("last_age_open", [True, False])
def test_births_and_orig_dest_small_updates_are_local(make_age_orig_dest_combined, last_age_open) -> None:
    """Births small updates move no stock; orig-dest ones move at most two accession cells."""
    combined = make_age_orig_dest_combined(seed=6, last_age_open=last_age_open)
    account = combined.account
    i_births, i_orig_dest = account.i_births, account.i_orig_dest
    for i_comp, max_acc_changes in ((i_births, 0), (i_orig_dest, 2)):
        n_done = 0
        for _ in range(200):
            proposal = proposals.propose_small(combined, i_comp)
            if proposal is None:
                continue
            popn = account.population.copy()
            acc = account.accession.copy()
            expo = combined.exposure.copy()
            assert combined.diff_log_lik_account(proposal) == 0.0
            commit.update_values_account(combined, proposal)
            assert np.array_equal(account.population, popn)
            assert np.array_equal(combined.exposure, expo)
            assert len(np.flatnonzero(account.accession != acc)) <= max_acc_changes
            assert account.is_consistent()
            n_done += 1
        assert n_done > 0
    assert combined.exposure_is_current()


@pytest.mark.parametrize("last_age_open", [True, False])
def test_oldest_upper_triangle_open_and_closed(make_age_orig_dest_combined, last_age_open) -> None:
    """Deaths in the oldest upper triangle reach the population only when the group is open."""
    combined = make_age_orig_dest_combined(seed=0, last_age_open=last_age_open)
    account = combined.account
    popn_desc = account.population_description
    mapping = account.mappings[1]
    i_cell = account.components[1].description.ravel((0, 2, UPPER, 0))
    proposal = Proposal(
        i_comp=2,
        role=ComponentRole.ORDINARY,
        i_cell=i_cell,
        diff=1,
        i_popn_next=mapping.i_popn_next(i_cell),
        i_acc_next=mapping.i_acc_next(i_cell),
        i_exp_first=mapping.i_exp_first(i_cell),
        i_exposure=mapping.i_exposure(i_cell),
        is_increment=False,
    )
    assert proposal.i_acc_next is None
    popn = account.population.copy()
    assert math.isfinite(combined.diff_log_dens_account(proposal))
    combined.update_values_account(proposal)
    assert account.is_consistent()
    assert combined.exposure_is_current()
    changed = list(np.flatnonzero(account.population != popn))
    if last_age_open:
        assert changed == [popn_desc.ravel((1, 2, 0)), popn_desc.ravel((2, 2, 0))]
    else:
        assert proposal.i_popn_next is None and proposal.i_exp_first is None
        assert changed == []


# -----------------------------------------------------------------------------
# Outer loop
# -----------------------------------------------------------------------------
def test_draw_system_models_leaves_account_untouched(make_combined) -> None:
    """Drawing parameters from their priors changes theta but not the account."""
    combined = make_combined(seed=7)
    account = combined.account
    before = [account.population.copy()] + [c.values.copy() for c in account.components]
    theta_before = [m.theta.copy() for m in combined.system_models]
    combined.draw_combined()
    after = [account.population] + [c.values for c in account.components]
    assert _same(before, after)
    assert any(not np.array_equal(a, m.theta) for a, m in zip(theta_before, combined.system_models))
    assert combined.exposure_is_current()


def test_run_is_deterministic_for_a_seed(make_combined) -> None:
    """Two chains with the same seed produce the same trace."""
    first = make_combined(seed=13)
    second = make_combined(seed=13)
    res1 = first.run(3)
    res2 = second.run(3)
    assert res1.n_iter == 3
    assert res1.log_likelihood == res2.log_likelihood
    assert np.array_equal(first.account.population, second.account.population)
    assert first.account.is_consistent()
    assert first.exposure_is_current()
