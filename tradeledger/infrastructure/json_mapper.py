from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict
from tradeledger.core.exceptions import DataSourceError
from tradeledger.core.models import Trade

class JsonTradeMapper:
    """
    Canonical trade records, e.g. exports from another tracker or on-chain swaps
    already normalized by an indexer:

        {"id": "...", "venue": "0xabc...", "asset": "ETH", "side": "buy",
         "price": "3100.5", "qty": "0.4", "fee": "0.0003",
         "timestamp": "2024-05-01T12:00:00Z", "source": "BASE_CHAIN"}

    `timestamp` may also be epoch milliseconds. `quantity` is accepted for `qty`.
    The ledger trade id is `<SOURCE>:<id>`, so equal ids from different sources never collide.
    """

    @staticmethod
    def parse_timestamp(value: Any) -> datetime:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

    @staticmethod
    def to_trade(raw: Dict[str, Any]) -> Trade:
        if not isinstance(raw, dict):
            raise DataSourceError(f"Trade record must be a JSON object, got {type(raw).__name__}")
        try:
            source = str(raw.get("source") or "MANUAL").upper()
            external_id = str(raw.get("external_id") or raw["id"])
            return Trade(
                trade_id=f"{source}:{raw['id']}",
                venue_key=str(raw["venue"]),
                asset=str(raw["asset"]).upper(),
                side=str(raw["side"]).upper(),
                price=Decimal(str(raw["price"])),
                qty=Decimal(str(raw["qty"] if "qty" in raw else raw["quantity"])),
                fee=Decimal(str(raw.get("fee", 0) or 0)),
                timestamp=JsonTradeMapper.parse_timestamp(raw["timestamp"]),
                source=source,
                external_id=external_id,
            )
        except (KeyError, ValueError, TypeError, InvalidOperation) as e:
            raise DataSourceError(f"Cannot map trade record {raw.get('id', '?')}: {e}") from e
