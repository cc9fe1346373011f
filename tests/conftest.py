"""Shared fixtures: a throwaway SQLite ledger per test and a trade builder."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradeledger.core.models import Trade
from tradeledger.infrastructure.sqlite.store import LedgerStore
from tradeledger.services.ledger import PositionLedger

BASE_TS = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def build_trade(
    trade_id: str,
    side: str,
    qty,
    price,
    fee="0",
    minute: int = 0,
    asset: str = "BTC",
    venue: str = "KRAKEN:main",
    ts: datetime = None,
    source: str = "TEST",
) -> Trade:
    return Trade(
        trade_id=trade_id,
        venue_key=venue,
        asset=asset,
        side=side,
        price=Decimal(str(price)),
        qty=Decimal(str(qty)),
        fee=Decimal(str(fee)),
        timestamp=ts or BASE_TS + timedelta(minutes=minute),
        source=source,
        external_id=trade_id,
    )


@pytest.fixture
def make_trade():
    return build_trade


@pytest.fixture
def store(tmp_path) -> LedgerStore:
    return LedgerStore(tmp_path / "ledger.db")


@pytest.fixture
def ledger(store) -> PositionLedger:
    return PositionLedger(store, epsilon=Decimal("0.000001"), max_retries=3)


def close_to(a, b, tol="0.000001") -> bool:
    return abs(Decimal(a) - Decimal(b)) <= Decimal(tol)
