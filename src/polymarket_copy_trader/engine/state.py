"""Per-user runtime state: signal watermark and per-token cooldowns.

State lives in memory and is owned by the orchestrator. An optional Redis
cache keeps it across restarts so a restarted worker does not re-scan the
lookback window; the history ledger deduplicates whatever is re-scanned.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from redis.asyncio import Redis

from polymarket_copy_trader.signals.models import Signal

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_LOOKBACK_MS = 60_000
DEFAULT_STATE_TTL_SECONDS = 86_400
STATE_KEY_PREFIX = "copytrader:state:user:"

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class UserState:
    """Watermark and cooldown stamps for one user."""

    last_signal_ts: int
    last_trade_by_token: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "last_signal_ts": self.last_signal_ts,
            "last_trade_by_token": dict(self.last_trade_by_token),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> UserState:
        trades = data.get("last_trade_by_token") or {}
        return cls(
            last_signal_ts=int(data["last_signal_ts"]),  # type: ignore[arg-type]
            last_trade_by_token={str(k): int(v) for k, v in dict(trades).items()},  # type: ignore[call-overload]
        )


class StateTracker:
    """In-memory per-user state store.

    Example:
        ```python
        tracker = StateTracker(initial_lookback_ms=60_000)
        state = tracker.get("user-1")
        tracker.advance("user-1", signals)
        tracker.record_trade("user-1", "token-1")
        ```
    """

    def __init__(
        self,
        *,
        initial_lookback_ms: int = DEFAULT_INITIAL_LOOKBACK_MS,
        clock: Clock = now_ms,
    ) -> None:
        self._initial_lookback_ms = initial_lookback_ms
        self._clock = clock
        self._states: dict[str, UserState] = {}

    def now(self) -> int:
        return self._clock()

    def has(self, user_id: str) -> bool:
        return user_id in self._states

    def get(self, user_id: str) -> UserState:
        """Return the user's state, creating it on first use.

        A fresh state starts one lookback window behind now so a newly
        enabled user does not replay history.
        """
        state = self._states.get(user_id)
        if state is None:
            state = UserState(last_signal_ts=self._clock() - self._initial_lookback_ms)
            self._states[user_id] = state
        return state

    def restore(self, user_id: str, state: UserState) -> UserState:
        """Adopt a previously persisted state, merging with any in-memory one."""
        current = self._states.get(user_id)
        if current is not None:
            current.last_signal_ts = max(current.last_signal_ts, state.last_signal_ts)
            for token_id, ts in state.last_trade_by_token.items():
                current.last_trade_by_token[token_id] = max(
                    current.last_trade_by_token.get(token_id, 0), ts
                )
            return current
        self._states[user_id] = state
        return state

    def advance(self, user_id: str, signals: Iterable[Signal]) -> int:
        """Move the watermark to the newest signal time; never backwards.

        Returns:
            The watermark after the update.
        """
        state = self.get(user_id)
        latest = max((s.ts for s in signals), default=None)
        if latest is not None and latest > state.last_signal_ts:
            state.last_signal_ts = latest
        return state.last_signal_ts

    def record_trade(self, user_id: str, token_id: str) -> int:
        """Stamp a successful trade on ``token_id`` for cooldown checks."""
        state = self.get(user_id)
        stamp = max(self._clock(), state.last_trade_by_token.get(token_id, 0))
        state.last_trade_by_token[token_id] = stamp
        return stamp

    def last_trade_at(self, user_id: str, token_id: str) -> int:
        """Last trade time for the token, 0 if never traded."""
        return self.get(user_id).last_trade_by_token.get(token_id, 0)

    def in_cooldown(self, user_id: str, token_id: str, copy_delay_ms: int) -> bool:
        return self._clock() - self.last_trade_at(user_id, token_id) < copy_delay_ms


class RedisStateCache:
    """Best-effort Redis persistence for UserState snapshots."""

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        key_prefix: str = STATE_KEY_PREFIX,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}{user_id}"

    async def load(self, user_id: str) -> UserState | None:
        raw = await self._redis.get(self._key(user_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return UserState.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable cached state for user %s: %s", user_id, e)
            return None

    async def save(self, user_id: str, state: UserState) -> None:
        await self._redis.set(self._key(user_id), json.dumps(state.to_dict()), ex=self._ttl)
