"""Shared builders for the account tests.

Five small accounts cover the move types:

- age:       time x age with Lexis triangles; births (fertile age 1 only),
             deaths and immigration
- orig_dest: time x region without age; births, deaths and internal
             orig-dest migration
- pool_net:  time x region without age; deaths, a migration pool and net
             internal migration
- age_orig_dest, age_pool_net:
             time x age x region, with the oldest age group open or
             closed; births at two or more parent ages, so births small
             updates have somewhere to go
"""

from __future__ import annotations

from functools import partial
from typing import Callable, Optional

import numpy as np
import pytest

from demaccount.account import Account, Component
from demaccount.combined import CombinedAccount, UpdateSettings
from demaccount.description import Description, Dimension
from demaccount.mappings import ComponentRole
from demaccount.models import NormalSystemModel, PoissonSystemModel
from demaccount.observation import CollapseTransform, PoissonDataModel


def _component_desc_age() -> Description:
    return Description(
        [
            Dimension("time", "time", 2),
            Dimension("age", "age", 3),
            Dimension("triangle", "triangle", 2),
        ]
    )


def build_age_account() -> Account:
    """Consistent account with three age groups (the oldest open) and three time points."""
    popn_desc = Description([Dimension("time", "time", 3), Dimension("age", "age", 3)])
    d = _component_desc_age()
    births = np.zeros((2, 3, 2), dtype=np.int64)
    births[0, 1] = [6, 5]
    births[1, 1] = [7, 4]
    deaths = np.array([[[1, 1], [2, 1], [3, 2]], [[1, 0], [2, 2], [3, 3]]], dtype=np.int64)
    immigration = np.ones((2, 3, 2), dtype=np.int64)
    components = [
        Component("births", births.reshape(-1), d, role=ComponentRole.BIRTHS),
        Component("deaths", deaths.reshape(-1), d, is_increment=False),
        Component("immigration", immigration.reshape(-1), d, is_increment=True),
    ]
    return Account.from_initial(np.array([30, 25, 20]), popn_desc, components)


def build_orig_dest_account() -> Account:
    """Consistent account with three regions and internal orig-dest migration."""
    popn_desc = Description([Dimension("time", "time", 3), Dimension("region", "state", 3)])
    flat = Description([Dimension("time", "time", 2), Dimension("region", "state", 3)])
    od = Description(
        [
            Dimension("time", "time", 2),
            Dimension("region_orig", "origin", 3, base="region"),
            Dimension("region_dest", "destination", 3, base="region"),
        ]
    )
    internal = np.array(
        [
            [[0, 2, 1], [3, 0, 2], [1, 1, 0]],
            [[0, 1, 2], [2, 0, 1], [2, 2, 0]],
        ],
        dtype=np.int64,
    )
    components = [
        Component("births", np.array([4, 3, 2, 5, 2, 3]), flat, role=ComponentRole.BIRTHS),
        Component("deaths", np.array([2, 1, 3, 1, 2, 2]), flat, is_increment=False),
        Component("internal", internal.reshape(-1), od, role=ComponentRole.ORIG_DEST),
    ]
    return Account.from_initial(np.array([50, 40, 30]), popn_desc, components)


def build_pool_net_account() -> Account:
    """Consistent account with three regions, a migration pool and net migration."""
    popn_desc = Description([Dimension("time", "time", 3), Dimension("region", "state", 3)])
    flat = Description([Dimension("time", "time", 2), Dimension("region", "state", 3)])
    pool_desc = Description(
        [
            Dimension("time", "time", 2),
            Dimension("region", "state", 3),
            Dimension("direction", "direction", 2),
        ]
    )
    pool = np.array([[[2, 1], [1, 4], [3, 1]], [[2, 3], [2, 1], [2, 2]]], dtype=np.int64)
    components = [
        Component("deaths", np.array([2, 1, 3, 1, 2, 2]), flat, is_increment=False),
        Component("pool", pool.reshape(-1), pool_desc, role=ComponentRole.POOL, between=("region",)),
        Component("net", np.array([1, -2, 1, 0, 3, -3]), flat, role=ComponentRole.NET, between=("region",)),
    ]
    return Account.from_initial(np.array([50, 40, 30]), popn_desc, components)


def _datasets_for(account: Account, series: list) -> tuple:
    """Poisson datasets equal to the series totals by time (so the start is feasible)."""
    data_models, datasets, transforms = [], [], []
    for k in series:
        desc = account.series_description(k)
        transform = CollapseTransform.from_description(desc, keep=["time"])
        datasets.append(transform.collapse(account.series(k)))
        transforms.append(transform)
        data_models.append(PoissonDataModel(np.ones(transform.n_after)))
    return data_models, datasets, transforms, list(series)


def build_age_combined(seed: int = 0, settings: Optional[UpdateSettings] = None) -> CombinedAccount:
    account = build_age_account()
    births_zero = np.ones((2, 3, 2), dtype=bool)
    births_zero[:, 1] = False
    system_models = [
        PoissonSystemModel(np.full(account.population.size, 25.0)),
        PoissonSystemModel(np.full(12, 0.2), uses_exposure=True, struc_zero=births_zero.reshape(-1)),
        PoissonSystemModel(np.full(12, 0.05), uses_exposure=True),
        PoissonSystemModel(np.full(12, 1.0)),
    ]
    dm, ds, tr, si = _datasets_for(account, [0, 2])
    return CombinedAccount(
        account, system_models, dm, ds, tr, si,
        settings=settings or UpdateSettings(prob_popn=0.3, prob_small_update=0.3, n_steps_account=60),
        rng=np.random.default_rng(seed),
    )


def build_orig_dest_combined(seed: int = 0, settings: Optional[UpdateSettings] = None) -> CombinedAccount:
    account = build_orig_dest_account()
    diagonal = np.zeros((2, 3, 3), dtype=bool)
    for r in range(3):
        diagonal[:, r, r] = True
    system_models = [
        PoissonSystemModel(np.full(account.population.size, 40.0)),
        PoissonSystemModel(np.full(6, 3.0)),
        PoissonSystemModel(np.full(6, 0.05), uses_exposure=True),
        PoissonSystemModel(np.full(18, 0.03), uses_exposure=True, struc_zero=diagonal.reshape(-1)),
    ]
    dm, ds, tr, si = _datasets_for(account, [0, 1, 2])
    return CombinedAccount(
        account, system_models, dm, ds, tr, si,
        settings=settings or UpdateSettings(prob_popn=0.3, n_steps_account=60),
        rng=np.random.default_rng(seed),
    )


def build_pool_net_combined(seed: int = 0, settings: Optional[UpdateSettings] = None) -> CombinedAccount:
    account = build_pool_net_account()
    system_models = [
        PoissonSystemModel(np.full(account.population.size, 40.0)),
        PoissonSystemModel(np.full(6, 0.05), uses_exposure=True),
        PoissonSystemModel(np.full(12, 0.05), uses_exposure=True),
        NormalSystemModel(np.zeros(6), varsigma=2.0),
    ]
    dm, ds, tr, si = _datasets_for(account, [0, 1])
    return CombinedAccount(
        account, system_models, dm, ds, tr, si,
        settings=settings or UpdateSettings(prob_popn=0.2, n_steps_account=60),
        rng=np.random.default_rng(seed),
    )


# -----------------------------------------------------------------------------
# Age x region accounts (Lexis triangles for every role)
# -----------------------------------------------------------------------------
def _age_region_dims(n_time: int, *extra: Dimension) -> list:
    return [
        Dimension("time", "time", n_time),
        Dimension("age", "age", 3),
        Dimension("triangle", "triangle", 2),
        Dimension("region", "state", 2),
        *extra,
    ]


def _age_region_population(last_age_open: bool) -> Description:
    return Description(
        [Dimension("time", "time", 3), Dimension("age", "age", 3), Dimension("region", "state", 2)],
        last_age_open=last_age_open,
    )


def build_age_orig_dest_account(last_age_open: bool = True) -> Account:
    """Age x region account: births at parent ages 1 and 2, deaths and internal orig-dest migration."""
    flat = Description(_age_region_dims(2), last_age_open=last_age_open)
    od = Description(
        [
            Dimension("time", "time", 2),
            Dimension("age", "age", 3),
            Dimension("triangle", "triangle", 2),
            Dimension("region_orig", "origin", 2, base="region"),
            Dimension("region_dest", "destination", 2, base="region"),
        ],
        last_age_open=last_age_open,
    )
    births = np.zeros((2, 3, 2, 2), dtype=np.int64)
    births[:, 1:] = 5
    internal = np.ones((2, 3, 2, 2, 2), dtype=np.int64)
    internal[..., 0, 0] = 0
    internal[..., 1, 1] = 0
    components = [
        Component("births", births.reshape(-1), flat, role=ComponentRole.BIRTHS),
        Component("deaths", np.full(flat.length, 2), flat, is_increment=False),
        Component("internal", internal.reshape(-1), od, role=ComponentRole.ORIG_DEST),
    ]
    initial = np.array([[40, 30], [35, 30], [30, 25]])
    return Account.from_initial(initial, _age_region_population(last_age_open), components)


def build_age_pool_net_account(last_age_open: bool = True) -> Account:
    """Age x region account: births, deaths, a migration pool and net internal migration."""
    flat = Description(_age_region_dims(2), last_age_open=last_age_open)
    pool_desc = Description(
        _age_region_dims(2, Dimension("direction", "direction", 2)),
        last_age_open=last_age_open,
    )
    net = np.zeros((2, 3, 2, 2), dtype=np.int64)
    net[..., 0] = 1
    net[..., 1] = -1
    components = [
        Component("births", np.full(flat.length, 4), flat, role=ComponentRole.BIRTHS),
        Component("deaths", np.ones(flat.length), flat, is_increment=False),
        Component("pool", np.full(pool_desc.length, 2), pool_desc, role=ComponentRole.POOL, between=("region",)),
        Component("net", net.reshape(-1), flat, role=ComponentRole.NET, between=("region",)),
    ]
    initial = np.array([[40, 30], [35, 30], [30, 25]])
    return Account.from_initial(initial, _age_region_population(last_age_open), components)


def build_age_orig_dest_combined(
    seed: int = 0,
    settings: Optional[UpdateSettings] = None,
    last_age_open: bool = True,
) -> CombinedAccount:
    account = build_age_orig_dest_account(last_age_open)
    births_zero = np.zeros((2, 3, 2, 2), dtype=bool)
    births_zero[:, 0] = True
    diagonal = np.zeros((2, 3, 2, 2, 2), dtype=bool)
    diagonal[..., 0, 0] = True
    diagonal[..., 1, 1] = True
    system_models = [
        PoissonSystemModel(np.full(account.population.size, 30.0)),
        PoissonSystemModel(np.full(24, 0.3), uses_exposure=True, struc_zero=births_zero.reshape(-1)),
        PoissonSystemModel(np.full(24, 0.1), uses_exposure=True),
        PoissonSystemModel(np.full(48, 0.05), uses_exposure=True, struc_zero=diagonal.reshape(-1)),
    ]
    dm, ds, tr, si = _datasets_for(account, [0, 2])
    return CombinedAccount(
        account, system_models, dm, ds, tr, si,
        settings=settings or UpdateSettings(prob_popn=0.2, prob_small_update=0.4, n_steps_account=60),
        rng=np.random.default_rng(seed),
    )


def build_age_pool_net_combined(
    seed: int = 0,
    settings: Optional[UpdateSettings] = None,
    last_age_open: bool = True,
) -> CombinedAccount:
    account = build_age_pool_net_account(last_age_open)
    system_models = [
        PoissonSystemModel(np.full(account.population.size, 30.0)),
        PoissonSystemModel(np.full(24, 0.25), uses_exposure=True),
        PoissonSystemModel(np.full(24, 0.07), uses_exposure=True),
        PoissonSystemModel(np.full(48, 0.1), uses_exposure=True),
        NormalSystemModel(np.zeros(24), varsigma=2.0),
    ]
    dm, ds, tr, si = _datasets_for(account, [0, 2])
    return CombinedAccount(
        account, system_models, dm, ds, tr, si,
        settings=settings or UpdateSettings(prob_popn=0.2, prob_small_update=0.4, n_steps_account=60),
        rng=np.random.default_rng(seed),
    )


_BUILDERS = {
    "age": build_age_combined,
    "orig_dest": build_orig_dest_combined,
    "pool_net": build_pool_net_combined,
    "age_orig_dest": build_age_orig_dest_combined,
    "age_orig_dest_closed": partial(build_age_orig_dest_combined, last_age_open=False),
    "age_pool_net": build_age_pool_net_combined,
    "age_pool_net_closed": partial(build_age_pool_net_combined, last_age_open=False),
}


@pytest.fixture
def age_account() -> Account:
    return build_age_account()


@pytest.fixture
def orig_dest_account() -> Account:
    return build_orig_dest_account()


@pytest.fixture
def pool_net_account() -> Account:
    return build_pool_net_account()


@pytest.fixture(params=sorted(_BUILDERS))
def make_combined(request) -> Callable[..., CombinedAccount]:
    """Factory over every combined-account layout: make_combined(seed=0, settings=None)."""
    return _BUILDERS[request.param]


@pytest.fixture
def make_age_combined() -> Callable[..., CombinedAccount]:
    return build_age_combined


@pytest.fixture
def make_age_orig_dest_combined() -> Callable[..., CombinedAccount]:
    """Factory: make_age_orig_dest_combined(seed=0, settings=None, last_age_open=True)."""
    return build_age_orig_dest_combined
