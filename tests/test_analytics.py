from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from conftest import build_trade, close_to
from tradeledger.core.exceptions import ValidationError
from tradeledger.core.models import BUY, SELL
from tradeledger.services.analytics import AnalyticsService
from tradeledger.services.pricing import PriceLookup, StaticPriceLookup


def _ts(year, month, day, hour=12):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def _round_trip(ledger, tid, open_px, close_px, opened, closed, side=BUY, qty=1, asset="BTC", fee="0"):
    close_side = SELL if side == BUY else BUY
    ledger.apply_trade(build_trade(f"{tid}-o", side, qty, open_px, fee=fee, ts=opened, asset=asset))
    ledger.apply_trade(build_trade(f"{tid}-c", close_side, qty, close_px, fee=fee, ts=closed, asset=asset))


def test_calculate_stats_empty():
    summary = AnalyticsService.calculate_stats([], [])
    assert summary.total_closed == 0
    assert summary.win_rate == 0.0
    assert summary.net_pnl == 0
    assert summary.best_position is None


def test_summary_realized_unrealized_and_win_rate(ledger, store):
    _round_trip(ledger, "w1", 100, 110, _ts(2024, 1, 1), _ts(2024, 1, 2), fee="1")   # +10
    _round_trip(ledger, "w2", 100, 130, _ts(2024, 1, 3), _ts(2024, 1, 4), fee="1")   # +30
    _round_trip(ledger, "l1", 100, 80, _ts(2024, 1, 5), _ts(2024, 1, 6), fee="1")    # -20
    _round_trip(ledger, "z1", 100, 100, _ts(2024, 1, 7), _ts(2024, 1, 8))            # flat
    ledger.apply_trade(build_trade("open", BUY, 2, 90, ts=_ts(2024, 1, 9)))

    summary = AnalyticsService(store, tz="UTC").summarize()
    assert summary.total_realized_pnl == Decimal("20")
    assert summary.total_fees == Decimal("6")
    assert summary.winning == 2
    assert summary.losing == 1
    assert summary.total_closed == 4
    assert summary.win_rate == pytest.approx(2 / 3)
    # last BTC trade is the open buy itself at 90
    assert summary.total_unrealized_pnl == Decimal("0")
    assert summary.open_positions == 1
    assert summary.best_position.position_id == "P-w2-o"
    assert summary.worst_position.position_id == "P-l1-o"
    assert summary.net_pnl == Decimal("14")


def test_unrealized_uses_latest_price_from_any_venue(ledger, store):
    ledger.apply_trade(build_trade("long", BUY, 2, 100, minute=0, venue="KRAKEN:main"))
    ledger.apply_trade(build_trade("short", SELL, 1, 100, minute=1, venue="0xWALLET"))
    ledger.apply_trade(build_trade("mark", BUY, "0.1", 120, minute=2, venue="GATEIO:main"))

    summary = AnalyticsService(store).summarize()
    # long: (120-100)*2 = 40, short: (100-120)*1 = -20, mark position: 0
    assert summary.total_unrealized_pnl == Decimal("20")


def test_missing_price_degrades_to_zero(ledger, store):
    ledger.apply_trade(build_trade("b1", BUY, 1, 100))
    summary = AnalyticsService(store, price_lookup=StaticPriceLookup({})).summarize()
    assert summary.total_unrealized_pnl == 0
    assert summary.unpriced_positions == 1


def test_failing_price_lookup_does_not_fail_summary(ledger, store):
    class Broken(PriceLookup):
        def latest_price(self, asset):
            raise RuntimeError("feed down")

    ledger.apply_trade(build_trade("b1", BUY, 1, 100))
    marks = AnalyticsService(store, price_lookup=Broken()).open_positions_with_marks()
    assert marks[0].current_price is None
    assert marks[0].unrealized_pnl == 0


def test_summary_date_range_filters_closed_only(ledger, store):
    _round_trip(ledger, "jan", 100, 110, _ts(2024, 1, 10), _ts(2024, 1, 20))
    _round_trip(ledger, "feb", 100, 150, _ts(2024, 2, 10), _ts(2024, 2, 20))
    ledger.apply_trade(build_trade("open", BUY, 1, 100, ts=_ts(2023, 12, 1), asset="ETH"))

    analytics = AnalyticsService(store, price_lookup=StaticPriceLookup({"ETH": "110"}), tz="UTC")
    summary = analytics.summarize(date(2024, 2, 1), date(2024, 2, 20))
    assert summary.total_realized_pnl == Decimal("50")
    assert summary.total_closed == 1
    assert summary.total_unrealized_pnl == Decimal("10")


def test_asset_summary_counts_fees_of_open_positions(ledger, store):
    _round_trip(ledger, "e1", 100, 90, _ts(2024, 1, 1), _ts(2024, 1, 2), asset="ETH", fee="0.5")
    ledger.apply_trade(build_trade("e2", BUY, 1, 95, fee="0.25", ts=_ts(2024, 1, 3), asset="ETH"))
    _round_trip(ledger, "b1", 100, 200, _ts(2024, 1, 1), _ts(2024, 1, 2))

    summary = AnalyticsService(store, price_lookup=StaticPriceLookup({"ETH": 100})).asset_summary("ETH")
    assert summary.total_realized_pnl == Decimal("-10")
    assert summary.total_fees == Decimal("1.25")
    assert summary.total_unrealized_pnl == Decimal("5")
    assert summary.win_rate == 0.0
    assert summary.losing == 1


def test_series_by_day_is_sparse_and_sorted(ledger, store):
    _round_trip(ledger, "a", 100, 110, _ts(2024, 3, 1, 8), _ts(2024, 3, 3, 9))
    _round_trip(ledger, "b", 100, 95, _ts(2024, 3, 1, 9), _ts(2024, 3, 1, 10), asset="ETH")
    _round_trip(ledger, "c", 100, 120, _ts(2024, 3, 3, 10), _ts(2024, 3, 3, 11), asset="SOL")

    points = AnalyticsService(store, tz="UTC").series_by_bucket(date(2024, 3, 1), date(2024, 3, 31), "day")
    assert [(p.bucket_key, p.pnl) for p in points] == [
        ("2024-03-01", Decimal("-5")),
        ("2024-03-03", Decimal("30")),
    ]


def test_series_by_week_uses_iso_year(ledger, store):
    # 2021-01-03 is a Sunday in ISO week 53 of 2020
    _round_trip(ledger, "a", 100, 110, _ts(2020, 12, 30), _ts(2021, 1, 3))
    _round_trip(ledger, "b", 100, 105, _ts(2021, 1, 3), _ts(2021, 1, 4), asset="ETH")

    points = AnalyticsService(store, tz="UTC").series_by_bucket(date(2020, 12, 1), date(2021, 1, 31), "week")
    assert [p.bucket_key for p in points] == ["2020-W53", "2021-W01"]


def test_series_by_month(ledger, store):
    _round_trip(ledger, "a", 100, 110, _ts(2024, 1, 5), _ts(2024, 1, 30))
    _round_trip(ledger, "b", 100, 90, _ts(2024, 2, 1), _ts(2024, 3, 2))
    _round_trip(ledger, "c", 100, 101, _ts(2024, 3, 3), _ts(2024, 3, 4))

    points = AnalyticsService(store, tz="UTC").series_by_bucket(date(2024, 1, 1), date(2024, 12, 31), "month")
    assert [(p.bucket_key, p.pnl) for p in points] == [
        ("2024-01", Decimal("10")),
        ("2024-03", Decimal("-9")),
    ]


def test_bucket_key_respects_timezone(store):
    analytics = AnalyticsService(store, tz="Asia/Taipei")
    assert analytics.bucket_key(datetime(2024, 1, 31, 20, tzinfo=timezone.utc), "day") == "2024-02-01"
    assert analytics.bucket_key(datetime(2024, 1, 31, 20, tzinfo=timezone.utc), "month") == "2024-02"


def test_unknown_bucket_is_rejected(store):
    with pytest.raises(ValidationError):
        AnalyticsService(store).series_by_bucket(date(2024, 1, 1), date(2024, 1, 2), "quarter")


def test_unrealized_pnl_sign_follows_side(ledger, store):
    ledger.apply_trade(build_trade("s", SELL, 3, 50))
    short = ledger.get_position("BTC", "KRAKEN:main")
    assert close_to(AnalyticsService.unrealized_pnl(short, Decimal("45")), "15")
    assert AnalyticsService.unrealized_pnl(short, None) == 0
