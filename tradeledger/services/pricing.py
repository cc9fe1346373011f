from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Optional
from tradeledger.infrastructure.sqlite.store import LedgerStore


class PriceLookup(ABC):
    """
    Current-price collaborator used for unrealized P&L.
    Implementations return None when no price is known for the asset.
    """

    @abstractmethod
    def latest_price(self, asset: str) -> Optional[Decimal]:
        pass


class TradeHistoryPriceLookup(PriceLookup):
    """
    Price proxy: the most recent trade price observed for the asset on any venue.
    Every call reads through to the trade table; nothing is cached.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def latest_price(self, asset: str) -> Optional[Decimal]:
        return self.store.latest_trade_price(asset)


class StaticPriceLookup(PriceLookup):
    """Fixed price table, for reports priced from an external snapshot."""

    def __init__(self, prices: Dict[str, Decimal]):
        self.prices = {k: Decimal(str(v)) for k, v in prices.items()}

    def latest_price(self, asset: str) -> Optional[Decimal]:
        return self.prices.get(asset)
