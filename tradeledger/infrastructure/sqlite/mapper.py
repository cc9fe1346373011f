import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from tradeledger.core.models import Trade, Position, Allocation

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def ts_to_text(ts: Optional[datetime]) -> Optional[str]:
    # fixed width so that lexical order in SQL equals chronological order
    if ts is None:
        return None
    return to_utc(ts).strftime(TS_FORMAT)


def text_to_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def dec_to_text(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def text_to_dec(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value)


class SqliteMapper:
    """
    負責 Domain Models 與 SQLite row 之間的轉換。
    Decimal 以 TEXT 儲存以保留精確值。
    """

    @staticmethod
    def trade_to_row(trade: Trade) -> Dict[str, Any]:
        return {
            "trade_id": trade.trade_id,
            "source": trade.source,
            "external_id": trade.external_id or trade.trade_id,
            "venue_key": trade.venue_key,
            "asset": trade.asset,
            "side": trade.side,
            "price": dec_to_text(trade.price),
            "qty": dec_to_text(trade.qty),
            "fee": dec_to_text(trade.fee),
            "ts_utc": ts_to_text(trade.timestamp),
        }

    @staticmethod
    def row_to_trade(row: sqlite3.Row) -> Trade:
        return Trade(
            trade_id=row["trade_id"],
            venue_key=row["venue_key"],
            asset=row["asset"],
            side=row["side"],
            price=text_to_dec(row["price"]),
            qty=text_to_dec(row["qty"]),
            fee=text_to_dec(row["fee"]),
            timestamp=text_to_ts(row["ts_utc"]),
            source=row["source"],
            external_id=row["external_id"],
        )

    @staticmethod
    def position_to_row(position: Position) -> Dict[str, Any]:
        return {
            "position_id": position.position_id,
            "asset": position.asset,
            "venue_key": position.venue_key,
            "side": position.side,
            "status": position.status,
            "open_qty": dec_to_text(position.open_qty),
            "closed_qty": dec_to_text(position.closed_qty),
            "remaining_qty": dec_to_text(position.remaining_qty),
            "avg_open_price": dec_to_text(position.avg_open_price),
            "avg_close_price": dec_to_text(position.avg_close_price),
            "realized_pnl": dec_to_text(position.realized_pnl),
            "total_fees": dec_to_text(position.total_fees),
            "opened_at": ts_to_text(position.opened_at),
            "closed_at": ts_to_text(position.closed_at),
            "version": position.version,
        }

    @staticmethod
    def row_to_position(row: sqlite3.Row) -> Position:
        return Position(
            position_id=row["position_id"],
            asset=row["asset"],
            venue_key=row["venue_key"],
            side=row["side"],
            status=row["status"],
            open_qty=text_to_dec(row["open_qty"]),
            closed_qty=text_to_dec(row["closed_qty"]),
            remaining_qty=text_to_dec(row["remaining_qty"]),
            avg_open_price=text_to_dec(row["avg_open_price"]),
            avg_close_price=text_to_dec(row["avg_close_price"]),
            realized_pnl=text_to_dec(row["realized_pnl"]),
            total_fees=text_to_dec(row["total_fees"]),
            opened_at=text_to_ts(row["opened_at"]),
            closed_at=text_to_ts(row["closed_at"]),
            version=row["version"],
        )

    @staticmethod
    def row_to_allocation(row: sqlite3.Row) -> Allocation:
        return Allocation(
            position_id=row["position_id"],
            trade_id=row["trade_id"],
            matched_qty=text_to_dec(row["matched_qty"]),
            seq=row["seq"],
        )
