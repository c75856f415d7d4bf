from dataclasses import dataclass, field

from .env import env_map
from .errors import ConfigurationError
from .types import PoolConfig


def _number(values: dict[str, str], name: str, default: float) -> float:
    raw = values.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    lb_api_key: str
    admin_api_key: str
    base_url: str = PoolConfig.base_url
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000
    keys_file: str = "keys.txt"
    keys_env: list[str] = field(default_factory=lambda: ["UPSTREAM_API_KEYS"])
    env_path: str | None = None
    cooldown_seconds: float = 60.0
    balance_ttl_seconds: float = 300.0
    balance_path: str = "/user/info"
    balance_field: str = "data.totalBalance"
    timeout_seconds: float | None = 600.0
    upstream_client: str = "httpx"
    log_level: str = "INFO"

    def pool_config(self) -> PoolConfig:
        return PoolConfig(
            base_url=self.base_url,
            cooldown_seconds=self.cooldown_seconds,
            balance_ttl_seconds=self.balance_ttl_seconds,
            balance_path=self.balance_path,
            balance_field=self.balance_field,
            timeout_seconds=self.timeout_seconds,
        )

    @classmethod
    def from_env(cls, env_path: str | None = None) -> "Settings":
        """Read settings from the environment, optionally augmented by a .env file.

        Real environment variables take precedence over the file.

        Raises:
            ConfigurationError: if LB_API_KEY / LB_ADMIN_KEY are missing or a
                numeric setting does not parse
        """
        values = env_map(env_path)
        lb_key = values.get("LB_API_KEY", "")
        admin_key = values.get("LB_ADMIN_KEY", "")
        if not lb_key or not admin_key:
            raise ConfigurationError(
                "LB_API_KEY and LB_ADMIN_KEY must be set in environment variables for security"
            )
        timeout = _number(values, "UPSTREAM_TIMEOUT_SECONDS", 600.0)
        client = values.get("UPSTREAM_CLIENT", "httpx").lower()
        if client not in {"httpx", "aiohttp"}:
            raise ConfigurationError(
                f"UPSTREAM_CLIENT must be 'httpx' or 'aiohttp', got {client!r}"
            )
        return cls(
            lb_api_key=lb_key,
            admin_api_key=admin_key,
            base_url=(values.get("UPSTREAM_BASE_URL") or PoolConfig.base_url).rstrip("/"),
            host=values.get("HOST", "0.0.0.0"),  # noqa: S104
            port=int(_number(values, "PORT", 3000)),
            keys_file=values.get("KEYS_FILE", "keys.txt"),
            env_path=env_path,
            cooldown_seconds=_number(values, "KEY_COOLDOWN_SECONDS", 60.0),
            balance_ttl_seconds=_number(values, "BALANCE_TTL_SECONDS", 300.0),
            balance_path=values.get("BALANCE_PATH", "/user/info"),
            balance_field=values.get("BALANCE_FIELD", "data.totalBalance"),
            timeout_seconds=timeout or None,
            upstream_client=client,
            log_level=values.get("LOG_LEVEL", "INFO").upper(),
        )
