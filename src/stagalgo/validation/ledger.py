"""Per-user record of executed and closed trades.

Fed by ``trade.executed`` and ``trade.closed``; the validator reads trade
counts, today's realized P&L and the last loss time from here.
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta

MAX_ENTRIES_PER_USER = 500
# Two trades further apart than this end a run of consecutive trades.
CONSECUTIVE_BREAK = timedelta(minutes=30)


@dataclass(frozen=True)
class _Close:
    ts: datetime
    realized_pnl: float


class TradeLedger:
    def __init__(self) -> None:
        self._trades: dict[str, deque[datetime]] = defaultdict(
            lambda: deque(maxlen=MAX_ENTRIES_PER_USER)
        )
        self._closes: dict[str, deque[_Close]] = defaultdict(
            lambda: deque(maxlen=MAX_ENTRIES_PER_USER)
        )

    def record_trade(self, user_id: str, ts: datetime) -> None:
        self._trades[user_id].append(ts)

    def record_close(self, user_id: str, ts: datetime, realized_pnl: float) -> None:
        self._closes[user_id].append(_Close(ts, realized_pnl))

    def trades_since(self, user_id: str, since: datetime, until: datetime) -> int:
        return sum(1 for ts in self._trades.get(user_id, ()) if since <= ts <= until)

    def trades_today(self, user_id: str, now: datetime) -> int:
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.trades_since(user_id, start_of_day, now)

    def trades_last_hour(self, user_id: str, now: datetime) -> int:
        return self.trades_since(user_id, now - timedelta(hours=1), now)

    def realized_pnl_today(self, user_id: str, now: datetime) -> float:
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return sum(c.realized_pnl for c in self._closes.get(user_id, ()) if start_of_day <= c.ts <= now)

    def last_loss_at(self, user_id: str, now: datetime) -> datetime | None:
        losses = [c.ts for c in self._closes.get(user_id, ()) if c.realized_pnl < 0 and c.ts <= now]
        return max(losses) if losses else None

    def consecutive_trades(self, user_id: str, now: datetime) -> int:
        """Length of the trailing run of trades with no gap above ``CONSECUTIVE_BREAK``.

        A run only counts while its last trade is within the break of ``now``.
        """
        trades = sorted(ts for ts in self._trades.get(user_id, ()) if ts <= now)
        if not trades or now - trades[-1] > CONSECUTIVE_BREAK:
            return 0
        run = 1
        for earlier, later in zip(reversed(trades[:-1]), reversed(trades[1:])):
            if later - earlier > CONSECUTIVE_BREAK:
                break
            run += 1
        return run

    def clear(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._trades.clear()
            self._closes.clear()
            return
        self._trades.pop(user_id, None)
        self._closes.pop(user_id, None)
