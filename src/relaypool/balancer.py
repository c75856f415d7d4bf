from typing import Union

from .adapters import make_upstream
from .balance import BalanceCache, BalanceSnapshot
from .config import Settings
from .forwarder import Forwarder, ProxiedResponse
from .pool import KeyPool, ReloadResult
from .types import AuthConfig, PoolConfig


class KeyBalancer:
    """Pool, forwarder and balance cache sharing one upstream client."""

    def __init__(
        self,
        pool: KeyPool,
        upstream=None,
        config: Union[PoolConfig, None] = None,
        auth_config: Union[AuthConfig, None] = None,
        log_level: Union[int, None] = None,
    ):
        self.config = config or PoolConfig()
        self.pool = pool
        self.upstream = upstream or make_upstream("httpx", self.config.timeout_seconds)
        self.forwarder = Forwarder(pool, self.upstream, self.config, auth_config, log_level)
        self.balance = BalanceCache(pool, self.upstream, self.config, auth_config, log_level)

    @classmethod
    def from_settings(cls, settings: Settings, upstream=None, **kwargs):
        config = settings.pool_config()
        pool = KeyPool.from_env(
            keys_file=settings.keys_file,
            env_names=settings.keys_env,
            env_path=settings.env_path,
            cooldown_seconds=config.cooldown_seconds,
        )
        if upstream is None:
            upstream = make_upstream(settings.upstream_client, config.timeout_seconds)
        return cls(pool, upstream=upstream, config=config, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def aclose(self):
        await self.upstream.aclose()

    async def forward(
        self, method: str, path: str, query: str = "", headers=None, content: bytes = b""
    ) -> ProxiedResponse:
        return await self.forwarder.forward(method, path, query, headers, content)

    async def get_total_balance(self, force_refresh: bool = False) -> BalanceSnapshot:
        return await self.balance.get_total_balance(force_refresh)

    async def reload_keys(self) -> ReloadResult:
        return await self.pool.reload()

    def stats(self) -> dict:
        return self.pool.stats()
