from dataclasses import dataclass
from decimal import Decimal


# eq=False: entries are tracked by identity, two keys may share a credential
@dataclass(eq=False)
class KeyEntry:
    credential: str
    index: int = 0  # 1-based position in its pool generation
    usage_count: int = 0
    last_used_at: float | None = None
    cooldown_until: float = 0.0
    cached_balance: Decimal | None = None
    balance_checked_at: float | None = None

    def __repr__(self) -> str:
        return f"KeyEntry(index={self.index}, usage_count={self.usage_count})"

    def is_active(self, now: float) -> bool:
        return now >= self.cooldown_until

    def cooldown_remaining(self, now: float) -> float:
        return max(0.0, self.cooldown_until - now)

    def balance_is_stale(self, now: float, ttl: float) -> bool:
        return self.balance_checked_at is None or now - self.balance_checked_at > ttl
