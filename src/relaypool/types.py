from dataclasses import dataclass


@dataclass(frozen=True)
class AuthConfig:
    header: str = "Authorization"
    scheme: str = "Bearer"


@dataclass(frozen=True)
class PoolConfig:
    base_url: str = "https://api.siliconflow.cn/v1"

    # Rate-limit cooldown (429)
    cooldown_seconds: float = 60.0

    # Balance cache
    balance_ttl_seconds: float = 300.0
    balance_path: str = "/user/info"
    balance_field: str = "data.totalBalance"

    # Read timeout for upstream calls; None waits forever
    timeout_seconds: float | None = 600.0

    def url_for(self, path: str, query: str = "") -> str:
        url = f"{self.base_url.rstrip('/')}{path}"
        return f"{url}?{query}" if query else url
