"""Account balances in the shared store, with a concurrency-safe charge."""

import asyncio
import random

from app.core.config import get_settings
from app.core.exceptions import AccountNotInitializedError, ConcurrencyConflictError, MalformedStateError
from app.core.logging import get_logger
from app.models.ledger import ChargeResult
from app.storage.base import StoreBackend, StoreConnection, WriteConflict, connection

log = get_logger(__name__)


def balance_key(account: str) -> str:
    return f"{account}/balance"


def parse_balance(account: str, raw: str | None) -> int:
    if raw is None:
        raise AccountNotInitializedError(account)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise MalformedStateError(
            f"Balance for account {account!r} is not an integer",
            details={"account": account, "value": str(raw)},
        ) from None


class Ledger:
    """
    reset/get/charge against one store. Holds no balance state of its own:
    every call reads the store, and each call uses its own connection.
    """

    def __init__(
        self,
        store: StoreBackend,
        default_balance: int | None = None,
        max_retries: int | None = None,
        retry_min_ms: float | None = None,
        retry_max_ms: float | None = None,
        retry_factor: float | None = None,
    ) -> None:
        s = get_settings()
        self.store = store
        self.default_balance = s.default_balance if default_balance is None else default_balance
        self.max_retries = s.charge_max_retries if max_retries is None else max_retries
        self.retry_min_ms = s.charge_retry_min_ms if retry_min_ms is None else retry_min_ms
        self.retry_max_ms = s.charge_retry_max_ms if retry_max_ms is None else retry_max_ms
        self.retry_factor = s.charge_retry_factor if retry_factor is None else retry_factor

    async def reset(self, account: str) -> None:
        """Set the balance to the default, discarding whatever was there."""
        async with connection(self.store) as conn:
            await conn.set(balance_key(account), self.default_balance)

    async def get(self, account: str) -> int:
        async with connection(self.store) as conn:
            raw = await conn.get(balance_key(account))
        return parse_balance(account, raw)

    async def charge(self, account: str, amount: int) -> ChargeResult:
        """
        Deduct `amount` if the balance covers it, else reject without writing.

        Optimistic: WATCH the key, read, decide, then MULTI/EXEC. If another
        writer touched the key in between, EXEC aborts and the whole
        read-decide-commit cycle runs again after a short randomized pause.
        Raises ConcurrencyConflictError once the retry budget is spent.
        """
        key = balance_key(account)
        async with connection(self.store) as conn:
            for attempt in range(self.max_retries + 1):
                try:
                    return await self._attempt_charge(conn, account, key, amount)
                except WriteConflict:
                    await conn.unwatch()
                    if attempt == self.max_retries:
                        break
                    delay_ms = self.backoff_ms(attempt)
                    log.debug("charge_conflict", account=account, attempt=attempt + 1, delay_ms=delay_ms)
                    await asyncio.sleep(delay_ms / 1000)

        log.warning("charge_retries_exhausted", account=account, charges=amount, attempts=self.max_retries + 1)
        raise ConcurrencyConflictError(
            f"Could not charge account {account!r} after {self.max_retries + 1} attempts",
            details={"account": account, "attempts": self.max_retries + 1},
        )

    async def _attempt_charge(self, conn: StoreConnection, account: str, key: str, amount: int) -> ChargeResult:
        await conn.watch(key)
        balance = parse_balance(account, await conn.get(key))
        if balance < amount:
            return ChargeResult(is_authorized=False, remaining_balance=balance, charges=0)
        confirmed = await conn.commit_set(key, balance - amount)
        return ChargeResult(
            is_authorized=True,
            remaining_balance=parse_balance(account, confirmed),
            charges=amount,
        )

    def backoff_ms(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based): randomized exponential, capped."""
        delay = random.uniform(1, 2) * self.retry_min_ms * self.retry_factor**attempt
        return min(round(delay), self.retry_max_ms)
