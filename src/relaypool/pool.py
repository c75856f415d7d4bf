import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from .env import make_loader
from .errors import ConfigurationError, NoAvailableKeysError
from .state import KeyEntry

DEFAULT_COOLDOWN_SECONDS = 60.0


def format_timestamp(ts: Union[float, None]) -> str:
    if not ts:
        return "Never"
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ReloadResult:
    previous_count: int
    key_count: int


class KeyPool:
    """Ordered credential entries plus the round-robin cursor.

    All selection and swap operations go through ``self._lock``; callers only
    ever receive references to entries, never the list itself. A reload builds
    a brand new list and swaps it in under the lock, so a selection sees either
    the old generation or the new one in full.

    The cursor remembers the position *after* the last selected entry rather
    than an offset into the active subset. Selection scans forward from there
    and takes the first active entry, so a key leaving or re-entering cooldown
    does not shift the rotation of the others.
    """

    def __init__(
        self,
        credentials: Iterable[str],
        loader: Union[Callable[[], list[str]], None] = None,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        log_level: Union[int, None] = None,
    ):
        """Initialize a KeyPool.

        Args:
            credentials (Iterable[str]): upstream secrets, in rotation order
            loader (Callable | None): zero-argument source used by reload()
            cooldown_seconds (float): how long a rate-limited key sits out
            log_level (int | None): level for the "relaypool" logger

        Raises:
            ConfigurationError: if credentials is empty
        """
        self._keys = self._build(list(credentials))
        self._cursor = 0
        self._generation = 1
        self._loader = loader
        self.cooldown_seconds = cooldown_seconds
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger("relaypool")
        if log_level is not None:
            with contextlib.suppress(Exception):
                self._logger.setLevel(log_level)
        self._logger.info(f"initialized pool with {len(self._keys)} keys")

    @staticmethod
    def _build(credentials: list[str]) -> list[KeyEntry]:
        if not credentials:
            raise ConfigurationError("No API keys found")
        return [KeyEntry(credential=c, index=i + 1) for i, c in enumerate(credentials)]

    def _now(self) -> float:
        return time.time()

    # ---------- convenience constructors ----------
    @classmethod
    def from_loader(cls, loader: Callable[[], list[str]], **kwargs):
        return cls(loader(), loader=loader, **kwargs)

    @classmethod
    def from_env(
        cls,
        keys_file: Union[str, None] = "keys.txt",
        env_names: Union[Iterable[str], None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ):
        """Build a pool from a keys file, falling back to environment variables."""
        return cls.from_loader(
            make_loader(keys_file=keys_file, env_names=env_names, env_path=env_path), **kwargs
        )

    # ---------- read-only views ----------
    @property
    def keys(self) -> list[KeyEntry]:
        return list(self._keys)

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._keys)

    def active_keys(self) -> list[KeyEntry]:
        now = self._now()
        return [k for k in self._keys if k.is_active(now)]

    def active_count(self) -> int:
        return len(self.active_keys())

    # ---------- selection ----------
    def _pick(self) -> KeyEntry:
        now = self._now()
        n = len(self._keys)
        for step in range(n):
            idx = (self._cursor + step) % n
            entry = self._keys[idx]
            if entry.is_active(now):
                self._cursor = (idx + 1) % n
                entry.usage_count += 1
                entry.last_used_at = now
                return entry
        raise NoAvailableKeysError()

    async def take_key(self) -> KeyEntry:
        async with self._lock:
            entry = self._pick()
        self._logger.debug(f"selected key={entry.index} uses={entry.usage_count}")
        return entry

    def mark_rate_limited(self, entry: KeyEntry) -> None:
        # Re-arming replaces the expiry; it never extends a pending one twice.
        entry.cooldown_until = self._now() + self.cooldown_seconds
        self._logger.info(
            f"key={entry.index} rate limited; cooling down {self.cooldown_seconds:.0f}s"
        )

    # ---------- reload ----------
    async def reload(self) -> ReloadResult:
        """Re-run the loader and swap in a fresh generation.

        Raises:
            ConfigurationError: if there is no loader or it yields no keys; the
                current pool is left exactly as it was.
        """
        if self._loader is None:
            raise ConfigurationError("pool was created without a loader; nothing to reload")
        try:
            fresh = self._build(list(self._loader()))
        except ConfigurationError as e:
            self._logger.warning(f"reload rejected, keeping {len(self._keys)} keys: {e}")
            raise
        async with self._lock:
            previous = len(self._keys)
            self._keys = fresh
            self._cursor = 0
            self._generation += 1
        self._logger.info(
            f"reloaded keys previous={previous} new={len(fresh)} generation={self._generation}"
        )
        return ReloadResult(previous_count=previous, key_count=len(fresh))

    # ---------- stats ----------
    def stats(self) -> dict:
        now = self._now()
        keys = self._keys
        return {
            "totalKeys": len(keys),
            "activeKeys": sum(1 for k in keys if k.is_active(now)),
            "generation": self._generation,
            "keyStats": [
                {
                    "index": k.index,
                    "requestCount": k.usage_count,
                    "lastUsed": format_timestamp(k.last_used_at),
                    "isActive": k.is_active(now),
                    "cooldownRemaining": round(k.cooldown_remaining(now), 1),
                    "balance": f"{k.cached_balance:.4f}" if k.cached_balance is not None else None,
                    "lastBalanceCheck": format_timestamp(k.balance_checked_at),
                }
                for k in keys
            ],
        }
