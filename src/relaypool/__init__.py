from .adapters import AiohttpUpstream, HttpxUpstream, UpstreamReply, make_upstream
from .balance import BalanceCache, BalanceSnapshot, KeyBalance
from .balancer import KeyBalancer
from .config import Settings
from .env import load_credentials_from_env, load_credentials_from_file, make_loader
from .errors import (
    BalanceCheckError,
    ConfigurationError,
    NoAvailableKeysError,
    RateLimitedError,
    RelayPoolError,
    UpstreamTransportError,
)
from .forwarder import Forwarder, ProxiedResponse, is_streaming_response
from .pool import KeyPool, ReloadResult
from .state import KeyEntry
from .types import AuthConfig, PoolConfig

__all__ = [
    "AuthConfig",
    "PoolConfig",
    "KeyEntry",
    "KeyPool",
    "ReloadResult",
    "Forwarder",
    "ProxiedResponse",
    "is_streaming_response",
    "BalanceCache",
    "BalanceSnapshot",
    "KeyBalance",
    "KeyBalancer",
    "Settings",
    "HttpxUpstream",
    "AiohttpUpstream",
    "UpstreamReply",
    "make_upstream",
    "load_credentials_from_env",
    "load_credentials_from_file",
    "make_loader",
    "RelayPoolError",
    "ConfigurationError",
    "NoAvailableKeysError",
    "UpstreamTransportError",
    "RateLimitedError",
    "BalanceCheckError",
]
