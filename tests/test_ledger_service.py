"""Ledger behaviour against the in-process store."""

import asyncio

import pytest

from app.core.exceptions import (
    AccountNotInitializedError,
    ConcurrencyConflictError,
    MalformedStateError,
    StoreUnavailableError,
)
from app.services.ledger import Ledger, balance_key
from app.storage.base import WriteConflict
from app.storage.memory import MemoryConnection, MemoryStore

pytestmark = pytest.mark.asyncio


class _AlwaysConflicts(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.commit_attempts = 0

    async def connect(self):
        return _AlwaysConflictsConnection(self)


class _AlwaysConflictsConnection(MemoryConnection):
    async def commit_set(self, key, value):
        self._store.commit_attempts += 1
        raise WriteConflict(key)


class _RivalDrainsFirst(MemoryStore):
    """The first commit loses to a rival that leaves `rival_balance` behind."""

    def __init__(self, rival_balance: int) -> None:
        super().__init__()
        self.rival_balance = rival_balance
        self.commit_attempts = 0

    async def connect(self):
        return _RivalConnection(self)


class _RivalConnection(MemoryConnection):
    async def commit_set(self, key, value):
        self._store.commit_attempts += 1
        if self._store.commit_attempts == 1:
            self._store.write(key, self._store.rival_balance)
        return await super().commit_set(key, value)


class _CommitUnreachable(MemoryStore):
    async def connect(self):
        return _CommitUnreachableConnection(self)


class _CommitUnreachableConnection(MemoryConnection):
    async def commit_set(self, key, value):
        raise StoreUnavailableError("connection reset")


class _TracksConnections(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.open = 0

    async def connect(self):
        self.open += 1
        return _TrackedConnection(self)


class _TrackedConnection(MemoryConnection):
    async def close(self):
        self._store.open -= 1
        await super().close()


def _fast(store, **kwargs) -> Ledger:
    return Ledger(store, retry_min_ms=0, retry_max_ms=0, **kwargs)


async def test_reset_sets_default_balance(ledger):
    await ledger.reset("acc")
    assert await ledger.get("acc") == 100


async def test_reset_overwrites_previous_balance(ledger):
    await ledger.reset("acc")
    await ledger.charge("acc", 70)
    await ledger.reset("acc")
    assert await ledger.get("acc") == 100


async def test_reset_stores_under_balance_key(ledger, store):
    await ledger.reset("alice")
    assert store.values[balance_key("alice")] == "100"
    assert balance_key("alice") == "alice/balance"


async def test_get_never_reset_account_raises(ledger):
    with pytest.raises(AccountNotInitializedError) as exc:
        await ledger.get("ghost")
    assert exc.value.code == "ACCOUNT_NOT_INITIALIZED"
    assert isinstance(exc.value, MalformedStateError)


async def test_get_non_integer_balance_raises(ledger, store):
    store.write(balance_key("acc"), "12.5")
    with pytest.raises(MalformedStateError) as exc:
        await ledger.get("acc")
    assert exc.value.code == "MALFORMED_STATE"
    assert exc.value.details == {"account": "acc", "value": "12.5"}


async def test_charge_scenario(ledger):
    await ledger.reset("acc")

    first = await ledger.charge("acc", 60)
    assert (first.is_authorized, first.remaining_balance, first.charges) == (True, 40, 60)

    second = await ledger.charge("acc", 60)
    assert (second.is_authorized, second.remaining_balance, second.charges) == (False, 40, 0)

    third = await ledger.charge("acc", 40)
    assert (third.is_authorized, third.remaining_balance, third.charges) == (True, 0, 40)


async def test_rejected_charge_leaves_balance_unchanged(ledger, store):
    await ledger.reset("acc")
    await ledger.charge("acc", 95)
    version = store.version(balance_key("acc"))

    result = await ledger.charge("acc", 6)

    assert not result.is_authorized
    assert result.charges == 0
    assert result.remaining_balance == 5
    assert await ledger.get("acc") == 5
    assert store.version(balance_key("acc")) == version


async def test_sequential_charges_conserve_credits(ledger):
    await ledger.reset("acc")
    results = [await ledger.charge("acc", amount) for amount in (7, 13, 25, 50, 9, 30, 1)]

    deducted = sum(r.charges for r in results)
    assert deducted == 100 - await ledger.get("acc")
    assert all(r.remaining_balance >= 0 for r in results)


async def test_charge_never_reset_account_raises_without_writing(ledger, store):
    with pytest.raises(AccountNotInitializedError):
        await ledger.charge("ghost", 10)
    assert balance_key("ghost") not in store.values


async def test_concurrent_charges_all_fit(ledger):
    await ledger.reset("acc")

    results = await asyncio.gather(
        ledger.charge("acc", 60),
        ledger.charge("acc", 30),
        ledger.charge("acc", 10),
    )

    assert all(r.is_authorized for r in results)
    assert sum(r.charges for r in results) == 100
    assert await ledger.get("acc") == 0
    # Replaying in commit order must reproduce every reported balance
    balance = 100
    for r in sorted(results, key=lambda r: -r.remaining_balance):
        balance -= r.charges
        assert r.remaining_balance == balance


async def test_concurrent_charges_never_overspend(store):
    ledger = Ledger(store, max_retries=100)
    await ledger.reset("acc")

    results = await asyncio.gather(*(ledger.charge("acc", 10) for _ in range(25)))

    authorized = [r for r in results if r.is_authorized]
    rejected = [r for r in results if not r.is_authorized]
    assert len(authorized) == 10
    assert sum(r.charges for r in authorized) == 100
    assert all(r.charges == 0 and r.remaining_balance == 0 for r in rejected)
    assert await ledger.get("acc") == 0
    assert sorted(r.remaining_balance for r in authorized) == list(range(0, 100, 10))


async def test_concurrent_mixed_charges_serialize(store):
    ledger = Ledger(store, max_retries=100)
    await ledger.reset("acc")
    amounts = [45, 30, 25, 20, 15, 5]

    results = await asyncio.gather(*(ledger.charge("acc", a) for a in amounts))

    authorized = [r for r in results if r.is_authorized]
    final = await ledger.get("acc")
    assert sum(r.charges for r in authorized) == 100 - final
    assert final >= 0
    balance = 100
    for r in sorted(authorized, key=lambda r: -r.remaining_balance):
        balance -= r.charges
        assert r.remaining_balance == balance
    # A rejection only happens once the balance is too small for it
    for amount, r in zip(amounts, results):
        if not r.is_authorized:
            assert r.remaining_balance < amount


async def test_lost_race_rechecks_funds():
    store = _RivalDrainsFirst(rival_balance=5)
    ledger = _fast(store)
    await ledger.reset("acc")

    result = await ledger.charge("acc", 60)

    assert store.commit_attempts == 1
    assert (result.is_authorized, result.remaining_balance, result.charges) == (False, 5, 0)
    assert await ledger.get("acc") == 5


async def test_lost_race_retries_against_new_balance():
    store = _RivalDrainsFirst(rival_balance=80)
    ledger = _fast(store)
    await ledger.reset("acc")

    result = await ledger.charge("acc", 60)

    assert store.commit_attempts == 2
    assert (result.is_authorized, result.remaining_balance, result.charges) == (True, 20, 60)


async def test_exhausted_retries_raise_conflict():
    store = _AlwaysConflicts()
    ledger = _fast(store, max_retries=3)
    await ledger.reset("acc")

    with pytest.raises(ConcurrencyConflictError) as exc:
        await ledger.charge("acc", 10)

    assert store.commit_attempts == 4
    assert exc.value.details == {"account": "acc", "attempts": 4}
    assert await ledger.get("acc") == 100


async def test_store_failure_mid_charge_leaves_balance():
    failing = _CommitUnreachable()
    ledger = _fast(failing)
    await ledger.reset("acc")

    with pytest.raises(StoreUnavailableError):
        await ledger.charge("acc", 10)

    assert await ledger.get("acc") == 100


async def test_connections_released_on_every_path():
    store = _TracksConnections()
    ledger = _fast(store)

    await ledger.reset("acc")
    await ledger.get("acc")
    await ledger.charge("acc", 10)
    await ledger.charge("acc", 1000)
    with pytest.raises(AccountNotInitializedError):
        await ledger.charge("ghost", 10)

    assert store.open == 0


async def test_backoff_is_randomized_and_capped(store):
    ledger = Ledger(store, retry_min_ms=3, retry_max_ms=10, retry_factor=2)
    first = [ledger.backoff_ms(0) for _ in range(50)]
    assert all(3 <= d <= 6 for d in first)
    assert ledger.backoff_ms(4) == 10
    assert ledger.backoff_ms(9) == 10
