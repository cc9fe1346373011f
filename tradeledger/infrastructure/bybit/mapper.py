from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List
from tradeledger.core.exceptions import DataSourceError
from tradeledger.core.models import BUY, SELL, Trade

SOURCE = "BYBIT"
QUOTE_ASSETS = ("USDT", "USDC", "USD", "BTC", "ETH", "EUR")
TRADE_EXEC_TYPES = ("Trade", "AdlTrade", "BustTrade")

class BybitMapper:
    """
    負責將 Bybit V5 execution 原始 JSON 轉換為核心 Trade 模型。
    Funding / Settle 等非成交紀錄不屬於倉位帳本，由 is_trade 過濾。
    """

    @staticmethod
    def base_asset(symbol: str) -> str:
        """BTCUSDT -> BTC；找不到已知報價幣時原樣回傳。"""
        for quote in QUOTE_ASSETS:
            if symbol.endswith(quote) and len(symbol) > len(quote):
                return symbol[: -len(quote)]
        return symbol

    @staticmethod
    def to_trade(raw: Dict[str, Any], account: str = "Main") -> Trade:
        """
        將單筆 execution 紀錄轉為 Trade 物件。
        venue_key 以帳戶區分，不同帳戶的倉位不會合併。
        """
        if not isinstance(raw, dict):
            raise DataSourceError(f"Bybit execution must be a JSON object, got {type(raw).__name__}")
        try:
            exec_id = str(raw["execId"])
            side = str(raw["side"]).upper()
            if side not in (BUY, SELL):
                raise DataSourceError(f"Bybit execution {exec_id}: unknown side {raw['side']!r}")
            return Trade(
                trade_id=f"{SOURCE}:{exec_id}",
                venue_key=f"{SOURCE}:{account}",
                asset=BybitMapper.base_asset(raw["symbol"]),
                side=side,
                price=Decimal(str(raw["execPrice"])),
                qty=Decimal(str(raw["execQty"])),
                # maker rebates (negative fees) are not tracked by the ledger
                fee=max(Decimal(str(raw.get("execFee", 0) or 0)), Decimal("0")),
                timestamp=datetime.fromtimestamp(int(raw["execTime"]) / 1000, tz=timezone.utc),
                source=SOURCE,
                external_id=exec_id,
            )
        except (KeyError, ValueError, TypeError, InvalidOperation) as e:
            raise DataSourceError(f"Cannot map Bybit execution {raw.get('execId', '?')}: {e}") from e

    @staticmethod
    def is_trade(raw: Dict[str, Any]) -> bool:
        # non-objects pass through so to_trade reports them
        if not isinstance(raw, dict):
            return True
        return raw.get("execType", "Trade") in TRADE_EXEC_TYPES

    @staticmethod
    def to_trades(records: Iterable[Dict[str, Any]], account: str = "Main") -> List[Trade]:
        return [BybitMapper.to_trade(r, account) for r in records if BybitMapper.is_trade(r)]
