import argparse
import json
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from functools import partial
from tradeledger.config.settings import settings
from tradeledger.config.logging import logger, set_level
from tradeledger.core.exceptions import AppError, ConfigurationError, DataSourceError
from tradeledger.core.models import CLOSED, OPEN
from tradeledger.infrastructure.bybit.mapper import BybitMapper
from tradeledger.infrastructure.json_mapper import JsonTradeMapper
from tradeledger.infrastructure.sqlite.store import LedgerStore
from tradeledger.services.analytics import AnalyticsService, BUCKETS
from tradeledger.services.ledger import PositionLedger
from tradeledger.services.pricing import StaticPriceLookup
from tradeledger.services.report_formatter import ReportFormatter
from tradeledger.services.reporter import ReporterService
from tradeledger.services.syncer import SyncService

def _parse_prices(pairs):
    prices = {}
    for pair in pairs or []:
        asset, _, value = pair.partition("=")
        try:
            prices[asset.upper()] = Decimal(value)
        except InvalidOperation:
            raise ConfigurationError(f"Invalid price {pair!r}, expected ASSET=PRICE")
    return prices

def _load_records(path: str):
    """JSON array, a single JSON document, or JSON lines"""
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read().strip()
        if not text:
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = [json.loads(line) for line in text.splitlines() if line.strip()]
    except (OSError, json.JSONDecodeError) as e:
        raise DataSourceError(f"Cannot read trades from {path}: {e}") from e
    if isinstance(data, list):
        return data
    # Bybit API dumps: {"result": {"list": [...]}}
    if isinstance(data, dict) and isinstance(data.get("result"), dict):
        return data["result"].get("list", [])
    return [data]

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Position ledger & P&L CLI")
    parser.add_argument("--db", default=None, help="SQLite ledger path (default: LEDGER_DB_PATH)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Command: ingest
    ingest_parser = subparsers.add_parser("ingest", help="Ingest trades from a JSON / JSON lines file")
    ingest_parser.add_argument("file")
    ingest_parser.add_argument("--format", choices=["canonical", "bybit"], default="canonical")
    ingest_parser.add_argument("--account", default="Main", help="Account name for Bybit venue keys")

    # Command: recompute
    subparsers.add_parser("recompute", help="Rebuild all positions from stored trades")

    # Command: positions
    positions_parser = subparsers.add_parser("positions", help="List positions")
    positions_parser.add_argument("--status", choices=[OPEN, CLOSED], default=OPEN)
    positions_parser.add_argument("--asset")
    positions_parser.add_argument("--limit", type=int)

    # Command: summary
    summary_parser = subparsers.add_parser("summary", help="Realized / unrealized P&L summary")
    summary_parser.add_argument("--start", type=date.fromisoformat)
    summary_parser.add_argument("--end", type=date.fromisoformat)
    summary_parser.add_argument("--asset", help="All-time summary for one asset")
    summary_parser.add_argument("--price", action="append", metavar="ASSET=PRICE",
                                help="Override the last-trade price proxy")

    # Command: series
    series_parser = subparsers.add_parser("series", help="Realized P&L per day / week / month")
    series_parser.add_argument("--start", type=date.fromisoformat, required=True)
    series_parser.add_argument("--end", type=date.fromisoformat, required=True)
    series_parser.add_argument("--bucket", choices=BUCKETS, default="day")

    # Command: export
    export_parser = subparsers.add_parser("export", help="Export positions or a P&L series")
    export_parser.add_argument("what", choices=["positions", "series"])
    export_parser.add_argument("--format", choices=["csv", "excel"], default="csv")
    export_parser.add_argument("--start", type=date.fromisoformat)
    export_parser.add_argument("--end", type=date.fromisoformat)
    export_parser.add_argument("--bucket", choices=BUCKETS, default="month")

    return parser

def run(args) -> int:
    db_path = args.db or (settings.LEDGER_DB_PATH if settings else None)
    if not db_path:
        raise ConfigurationError("LEDGER_DB_PATH is not set")
    store = LedgerStore(db_path)
    ledger = PositionLedger(store)

    if args.command == "ingest":
        records = _load_records(args.file)
        if args.format == "bybit":
            records = [r for r in records if BybitMapper.is_trade(r)]
            mapper = partial(BybitMapper.to_trade, account=args.account)
        else:
            mapper = JsonTradeMapper.to_trade
        report = SyncService(store, ledger).ingest_raw(records, mapper)
        print(ReportFormatter.format_ingest_report(report))
        return 0 if report.ok else 2

    if args.command == "recompute":
        ledger.recompute()
        print(f"Rebuilt {len(store.list_positions())} positions")
        return 0

    if args.command == "positions":
        if args.status == OPEN:
            marks = AnalyticsService(store).open_positions_with_marks(asset=args.asset, limit=args.limit)
            print(ReportFormatter.format_positions([], marks))
        else:
            if args.asset:
                closed = store.list_positions(status=CLOSED, asset=args.asset, limit=args.limit)
            else:
                closed = ledger.get_closed_positions(args.limit)
            print(ReportFormatter.format_positions(closed))
        return 0

    if args.command == "summary":
        prices = _parse_prices(args.price)
        analytics = AnalyticsService(store, StaticPriceLookup(prices) if prices else None)
        if args.asset:
            summary = analytics.asset_summary(args.asset.upper())
            print(ReportFormatter.format_summary(summary, title=f"{args.asset.upper()} P&L"))
        else:
            print(ReportFormatter.format_summary(analytics.summarize(args.start, args.end)))
        return 0

    if args.command == "series":
        points = AnalyticsService(store).series_by_bucket(args.start, args.end, args.bucket)
        print(ReportFormatter.format_series(points, args.bucket))
        return 0

    if args.command == "export":
        reporter = ReporterService(store)
        if args.what == "positions":
            path = reporter.export_positions(output_format=args.format)
        else:
            if not (args.start and args.end):
                raise ConfigurationError("export series requires --start and --end")
            path = reporter.export_series(args.start, args.end, args.bucket, output_format=args.format)
        print(path)
        return 0

    return 1

def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.log_level:
        set_level(args.log_level)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        code = run(args)
    except AppError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)
    sys.exit(code)

if __name__ == "__main__":
    main()
