import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

from .errors import BalanceCheckError, UpstreamTransportError
from .pool import KeyPool, format_timestamp
from .state import KeyEntry
from .types import AuthConfig, PoolConfig

FOUR_PLACES = Decimal("0.0001")


def _dig(data, dotted: str):
    for part in dotted.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


@dataclass(frozen=True)
class KeyBalance:
    index: int
    balance: Decimal
    checked_at: Union[float, None]
    active: bool

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "balance": f"{self.balance:.4f}",
            "lastChecked": format_timestamp(self.checked_at),
            "isActive": self.active,
        }


@dataclass(frozen=True)
class BalanceSnapshot:
    total: Decimal
    keys: list[KeyBalance]

    def to_dict(self) -> dict:
        return {
            "totalBalance": f"{self.total:.4f}",
            "keyBalances": [k.to_dict() for k in self.keys],
        }


class BalanceCache:
    """Per-key remaining quota, refreshed lazily.

    A refresh cycle queries every active key concurrently and waits for all of
    them. Cycles are serialized: a caller that queued behind a running cycle
    re-checks staleness and skips its own cycle when the first one already
    brought every active key up to date. A failing key keeps its previous
    figure; only a cycle in which every queried key failed is an error.
    """

    def __init__(
        self,
        pool: KeyPool,
        upstream,
        config: Union[PoolConfig, None] = None,
        auth_config: Union[AuthConfig, None] = None,
        log_level: Union[int, None] = None,
    ):
        self.pool = pool
        self.upstream = upstream
        self.config = config or PoolConfig()
        self._auth_config = auth_config or AuthConfig()
        self._refresh_lock = asyncio.Lock()
        self._logger = logging.getLogger("relaypool")
        if log_level is not None:
            with contextlib.suppress(Exception):
                self._logger.setLevel(log_level)

    def _now(self) -> float:
        return self.pool._now()

    def needs_refresh(self, now: Union[float, None] = None) -> bool:
        now = self._now() if now is None else now
        ttl = self.config.balance_ttl_seconds
        return any(k.is_active(now) and k.balance_is_stale(now, ttl) for k in self.pool.keys)

    async def check_balance(self, entry: KeyEntry) -> Decimal:
        """Query one key's remaining balance and store it on the entry.

        Raises:
            BalanceCheckError: on transport failure, non-2xx status or an
                unreadable body. The entry's cached figure is left untouched.
        """
        ac = self._auth_config
        headers = [
            (ac.header, f"{ac.scheme} {entry.credential}".strip()),
            ("Content-Type", "application/json"),
            ("Accept-Encoding", "identity"),
        ]
        url = self.config.url_for(self.config.balance_path)
        try:
            reply = await self.upstream.send("GET", url, headers)
            try:
                body = await reply.aread()
            finally:
                await reply.aclose()
        except UpstreamTransportError as e:
            raise BalanceCheckError(f"key {entry.index}: {e}", index=entry.index) from e

        if not 200 <= reply.status_code < 300:  # noqa: PLR2004
            raise BalanceCheckError(
                f"key {entry.index}: balance endpoint returned {reply.status_code}",
                index=entry.index,
            )
        try:
            value = _dig(json.loads(body), self.config.balance_field)
            balance = Decimal(str(value or 0))
            if not balance.is_finite():
                raise InvalidOperation(f"non-finite balance {balance}")
            # raises when the figure cannot be held at four places
            balance = balance.quantize(FOUR_PLACES)
        except (ValueError, InvalidOperation) as e:
            raise BalanceCheckError(
                f"key {entry.index}: unreadable balance payload", index=entry.index
            ) from e

        entry.cached_balance = balance
        entry.balance_checked_at = self._now()
        return balance

    async def refresh(self, force: bool = False) -> None:
        async with self._refresh_lock:
            now = self._now()
            if not force and not self.needs_refresh(now):
                return
            targets = [k for k in self.pool.keys if k.is_active(now)]
            if not targets:
                return
            self._logger.info(f"refreshing balance for {len(targets)} keys")
            results = await asyncio.gather(
                *(self.check_balance(k) for k in targets), return_exceptions=True
            )
            failures = 0
            for entry, result in zip(targets, results):
                if isinstance(result, Exception):
                    failures += 1
                    self._logger.warning(f"balance check failed key={entry.index}: {result}")
                elif isinstance(result, BaseException):
                    raise result
            if failures == len(targets):
                raise BalanceCheckError("balance check failed for every key")

    def snapshot(self) -> BalanceSnapshot:
        now = self._now()
        keys = self.pool.keys
        per_key = [
            KeyBalance(
                index=k.index,
                balance=(k.cached_balance or Decimal(0)).quantize(FOUR_PLACES),
                checked_at=k.balance_checked_at,
                active=k.is_active(now),
            )
            for k in keys
        ]
        with localcontext() as ctx:
            # per-key figures fit the default precision; their sum may not
            ctx.prec = 60
            total = sum((k.cached_balance or Decimal(0) for k in keys), Decimal(0))
            total = total.quantize(FOUR_PLACES)
        return BalanceSnapshot(total=total, keys=per_key)

    async def get_total_balance(self, force_refresh: bool = False) -> BalanceSnapshot:
        if force_refresh or self.needs_refresh():
            await self.refresh(force=force_refresh)
        return self.snapshot()
