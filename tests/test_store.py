import sqlite3
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import build_trade
from tradeledger.core.exceptions import TradeIdConflictError
from tradeledger.core.models import BUY, SELL, Allocation
from tradeledger.infrastructure.sqlite.mapper import SqliteMapper, text_to_ts, ts_to_text
from tradeledger.infrastructure.sqlite.store import LedgerStore


def test_insert_trade_dedupes_on_source_and_external_id(store):
    trade = build_trade("t1", BUY, 1, 100)
    assert store.insert_trade(trade) is True
    assert store.insert_trade(trade) is False

    same_external = build_trade("t1-copy", BUY, 1, 100)
    object.__setattr__(same_external, "external_id", "t1")
    assert store.insert_trade(same_external) is False
    assert [t.trade_id for t in store.list_trades()] == ["t1"]


def test_trade_round_trip_keeps_exact_decimals(store):
    trade = build_trade("t1", SELL, "0.123456789012", "64123.987654321", fee="0.000001")
    store.insert_trade(trade)
    assert store.get_trade("t1") == trade


def test_trades_listed_in_replay_order(store):
    store.insert_trade(build_trade("b", BUY, 1, 100, minute=1))
    store.insert_trade(build_trade("c", BUY, 1, 100, minute=0))
    store.insert_trade(build_trade("a", BUY, 1, 100, minute=1))
    assert [t.trade_id for t in store.list_trades()] == ["c", "a", "b"]


def test_latest_trade_price_spans_venues(store):
    assert store.latest_trade_price("BTC") is None
    store.insert_trade(build_trade("t1", BUY, 1, 100, minute=0, venue="A"))
    store.insert_trade(build_trade("t2", SELL, 1, 105, minute=5, venue="B"))
    store.insert_trade(build_trade("t3", BUY, 1, 3000, minute=9, asset="ETH"))
    assert store.latest_trade_price("BTC") == Decimal("105")


def test_timestamps_stored_in_sortable_utc_text():
    naive = datetime(2024, 1, 2, 3, 4, 5)
    text = ts_to_text(naive)
    assert text == "2024-01-02T03:04:05.000000+00:00"
    assert text_to_ts(text) == naive.replace(tzinfo=timezone.utc)


def test_replace_all_is_atomic(store, ledger):
    ledger.apply_trade(build_trade("t1", BUY, 1, 100))
    before = (store.list_positions(), store.list_allocations())

    dup = Allocation("P-x", "t1", Decimal("1"), seq=1)
    with pytest.raises(sqlite3.IntegrityError):
        store.replace_all([], [], [dup, dup])
    assert (store.list_positions(), store.list_allocations()) == before


def test_position_mapper_round_trip(store, ledger):
    ledger.apply_trade(build_trade("t1", BUY, 2, 100))
    ledger.apply_trade(build_trade("t2", SELL, 1, 110, minute=1))
    pos = store.get_position("P-t1")
    row = SqliteMapper.position_to_row(pos)
    assert row["avg_close_price"] == "110"
    assert row["version"] == 2


def test_store_creates_parent_directory(tmp_path):
    store = LedgerStore(tmp_path / "nested" / "dir" / "ledger.db")
    assert store.path.exists()


def test_trade_id_clash_is_not_a_duplicate(store):
    store.insert_trade(build_trade("t1", BUY, 1, 100, source="GATEIO"))
    other = build_trade("t1", SELL, 1, 100, source="KRAKEN")
    with pytest.raises(TradeIdConflictError):
        store.insert_trade(other)
    assert store.get_trade("t1").source == "GATEIO"


def test_replace_all_failing_on_positions_insert_keeps_old_state(store, ledger):
    ledger.apply_trade(build_trade("t1", BUY, 2, 100))
    ledger.apply_trade(build_trade("t2", SELL, 1, 110, minute=1))
    before = (store.list_positions(), store.list_allocations())
    pos = store.get_position("P-t1")

    # the DELETEs have already run when the second position row hits the primary key
    with pytest.raises(sqlite3.IntegrityError):
        store.replace_all([], [pos, pos.copy()], [])
    assert (store.list_positions(), store.list_allocations()) == before
