from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union
from zoneinfo import ZoneInfo
from tradeledger.config.settings import settings
from tradeledger.config.logging import logger
from tradeledger.core.exceptions import ValidationError
from tradeledger.core.models import (
    BUY, CLOSED, OPEN, ZERO,
    MarkedPosition, PnLSummary, Position, SeriesPoint,
)
from tradeledger.infrastructure.sqlite.store import LedgerStore
from .pricing import PriceLookup, TradeHistoryPriceLookup

BUCKETS = ("day", "week", "month")

DateLike = Union[date, datetime]


class AnalyticsService:
    """
    Read-only P&L projection over the position table.
    Reads may interleave with ledger writes; a summary taken mid-ingestion can
    miss the newest trade.
    """

    def __init__(self, store: LedgerStore, price_lookup: Optional[PriceLookup] = None, tz: Optional[str] = None):
        self.store = store
        self.price_lookup = price_lookup or TradeHistoryPriceLookup(store)
        tz_name = tz or (settings.TZ if settings else "UTC")
        try:
            self.tz = ZoneInfo(tz_name)
        except Exception:
            logger.warning(f"Invalid timezone {tz_name}, falling back to UTC")
            self.tz = timezone.utc

    @staticmethod
    def unrealized_pnl(position: Position, current_price: Optional[Decimal]) -> Decimal:
        if current_price is None:
            return ZERO
        if position.side == BUY:
            return (current_price - position.avg_open_price) * position.remaining_qty
        return (position.avg_open_price - current_price) * position.remaining_qty

    @staticmethod
    def calculate_stats(closed: List[Position], marks: List[MarkedPosition], fees: Optional[Decimal] = None) -> PnLSummary:
        """
        Aggregate closed positions and marked open positions into a PnLSummary.
        Fees default to the closed positions' fees.
        """
        realized = sum((p.realized_pnl for p in closed), ZERO)
        unrealized = sum((m.unrealized_pnl for m in marks), ZERO)
        if fees is None:
            fees = sum((p.total_fees for p in closed), ZERO)

        # Win Rate: realized > 0 is a win, < 0 a loss, exactly 0 is neither.
        wins = sum(1 for p in closed if p.realized_pnl > 0)
        losses = sum(1 for p in closed if p.realized_pnl < 0)
        classified = wins + losses
        win_rate = wins / classified if classified else 0.0

        best = worst = None
        if closed:
            best = max(closed, key=lambda p: p.realized_pnl)
            worst = min(closed, key=lambda p: p.realized_pnl)

        return PnLSummary(
            total_realized_pnl=realized,
            total_unrealized_pnl=unrealized,
            total_fees=fees,
            net_pnl=realized + unrealized - fees,
            win_rate=win_rate,
            total_closed=len(closed),
            winning=wins,
            losing=losses,
            open_positions=len(marks),
            unpriced_positions=sum(1 for m in marks if m.current_price is None),
            best_position=best,
            worst_position=worst,
        )

    def _price(self, asset: str, cache: Dict[str, Optional[Decimal]]) -> Optional[Decimal]:
        if asset not in cache:
            try:
                cache[asset] = self.price_lookup.latest_price(asset)
            except Exception as e:
                logger.warning(f"Price lookup failed for {asset}, excluding from unrealized P&L: {e}")
                cache[asset] = None
        return cache[asset]

    def open_positions_with_marks(self, asset: Optional[str] = None, limit: Optional[int] = None) -> List[MarkedPosition]:
        """Open positions marked against the current price proxy; unpriced ones carry 0 unrealized."""
        prices: Dict[str, Optional[Decimal]] = {}
        marks = []
        for position in self.store.list_positions(status=OPEN, asset=asset, limit=limit):
            price = self._price(position.asset, prices)
            marks.append(MarkedPosition(position, price, self.unrealized_pnl(position, price)))
        return marks

    def summarize(
        self,
        start_date: Optional[DateLike] = None,
        end_date: Optional[DateLike] = None,
        asset: Optional[str] = None,
    ) -> PnLSummary:
        """
        Realized P&L and fees from positions closed within [start_date, end_date];
        unrealized P&L from every open position regardless of range.
        """
        closed = self.store.list_positions(
            status=CLOSED,
            asset=asset,
            closed_from=self._bound(start_date),
            closed_to=self._bound(end_date, end=True),
        )
        marks = self.open_positions_with_marks(asset=asset)
        summary = self.calculate_stats(closed, marks)
        if summary.unpriced_positions:
            logger.info(f"{summary.unpriced_positions} open position(s) have no price and were left out of unrealized P&L")
        return summary

    def asset_summary(self, asset: str) -> PnLSummary:
        """All-time summary for one asset; fees cover open and closed positions."""
        closed = self.store.list_positions(status=CLOSED, asset=asset)
        marks = self.open_positions_with_marks(asset=asset)
        fees = sum((p.total_fees for p in closed), ZERO) + sum((m.position.total_fees for m in marks), ZERO)
        return self.calculate_stats(closed, marks, fees=fees)

    def series_by_bucket(self, start_date: DateLike, end_date: DateLike, bucket: str = "day") -> List[SeriesPoint]:
        """Realized P&L of positions closed in range, summed per bucket. Empty buckets are omitted."""
        if bucket not in BUCKETS:
            raise ValidationError(f"Unsupported bucket {bucket!r}; expected one of {', '.join(BUCKETS)}")
        closed = self.store.list_positions(
            status=CLOSED,
            closed_from=self._bound(start_date),
            closed_to=self._bound(end_date, end=True),
        )
        totals: Dict[str, Decimal] = {}
        for position in closed:
            if position.closed_at is None:
                continue
            key = self.bucket_key(position.closed_at, bucket)
            totals[key] = totals.get(key, ZERO) + position.realized_pnl
        return [SeriesPoint(key, totals[key]) for key in sorted(totals)]

    def bucket_key(self, ts: datetime, bucket: str) -> str:
        local = ts.astimezone(self.tz) if ts.tzinfo else ts.replace(tzinfo=timezone.utc).astimezone(self.tz)
        if bucket == "day":
            return local.strftime("%Y-%m-%d")
        if bucket == "week":
            iso_year, iso_week, _ = local.isocalendar()
            return f"{iso_year}-W{iso_week:02d}"
        if bucket == "month":
            return local.strftime("%Y-%m")
        raise ValidationError(f"Unsupported bucket {bucket!r}")

    def _bound(self, value: Optional[DateLike], end: bool = False) -> Optional[datetime]:
        # plain dates cover the whole local day
        if value is None:
            return None
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=self.tz)
        return datetime.combine(value, time.max if end else time.min, tzinfo=self.tz)
