import json
from decimal import Decimal

import pytest

from tradeledger.cmd.cli import _load_records, _parse_prices, main
from tradeledger.core.exceptions import ConfigurationError, DataSourceError


def _run(argv):
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


@pytest.fixture
def trades_file(tmp_path):
    path = tmp_path / "trades.jsonl"
    records = [
        {"id": "t1", "venue": "KRAKEN:main", "asset": "BTC", "side": "BUY", "price": "100",
         "qty": "2", "fee": "0.5", "timestamp": "2024-03-01T09:00:00Z"},
        {"id": "t2", "venue": "KRAKEN:main", "asset": "BTC", "side": "SELL", "price": "110",
         "qty": "1", "fee": "0.5", "timestamp": "2024-03-01T10:00:00Z"},
    ]
    path.write_text("\n".join(json.dumps(r) for r in records), encoding="utf-8")
    return path


def test_ingest_then_positions_and_summary(tmp_path, trades_file, capsys):
    db = str(tmp_path / "cli.db")

    assert _run(["--db", db, "ingest", str(trades_file)]) == 0
    assert "Added: 2  Skipped: 0  Applied: 2" in capsys.readouterr().out

    assert _run(["--db", db, "positions"]) == 0
    assert "BTC BUY OPEN @ KRAKEN:main qty 1/2" in capsys.readouterr().out

    assert _run(["--db", db, "summary", "--price", "BTC=120"]) == 0
    out = capsys.readouterr().out
    assert "Realized: +10.00" in out
    assert "Unrealized: +20.00" in out

    assert _run(["--db", db, "series", "--start", "2024-03-01", "--end", "2024-03-31"]) == 0
    assert "No closed positions in range" in capsys.readouterr().out


def test_ingest_with_failures_exits_2(tmp_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps([{"id": "x", "asset": "BTC"}]), encoding="utf-8")
    assert _run(["--db", str(tmp_path / "cli.db"), "ingest", str(path)]) == 2
    assert "❌ Failures" in capsys.readouterr().out


def test_recompute_command(tmp_path, trades_file, capsys):
    db = str(tmp_path / "cli.db")
    _run(["--db", db, "ingest", str(trades_file)])
    capsys.readouterr()
    assert _run(["--db", db, "recompute"]) == 0
    assert "Rebuilt 1 positions" in capsys.readouterr().out


def test_app_error_exits_1(tmp_path):
    assert _run(["--db", str(tmp_path / "cli.db"), "ingest", str(tmp_path / "missing.json")]) == 1


def test_no_command_prints_help(capsys):
    assert _run([]) == 1
    assert "usage" in capsys.readouterr().out


def test_load_records_unwraps_bybit_dump(tmp_path):
    path = tmp_path / "bybit.json"
    path.write_text(json.dumps({"retCode": 0, "result": {"list": [{"execId": "e1"}]}}), encoding="utf-8")
    assert _load_records(str(path)) == [{"execId": "e1"}]


def test_load_records_rejects_garbage(tmp_path):
    path = tmp_path / "garbage.json"
    path.write_text("not json", encoding="utf-8")
    with pytest.raises(DataSourceError):
        _load_records(str(path))


def test_parse_prices():
    assert _parse_prices(["btc=64000.5"]) == {"BTC": Decimal("64000.5")}
    with pytest.raises(ConfigurationError):
        _parse_prices(["BTC=cheap"])


def test_load_records_reads_pretty_printed_bybit_dump(tmp_path):
    path = tmp_path / "bybit.json"
    dump = {"retCode": 0, "result": {"list": [{"execId": "e1"}, {"execId": "e2"}]}}
    path.write_text(json.dumps(dump, indent=2), encoding="utf-8")
    assert _load_records(str(path)) == [{"execId": "e1"}, {"execId": "e2"}]


def test_load_records_reads_pretty_printed_single_record(tmp_path):
    path = tmp_path / "one.json"
    path.write_text(json.dumps({"id": "t1", "asset": "BTC"}, indent=2), encoding="utf-8")
    assert _load_records(str(path)) == [{"id": "t1", "asset": "BTC"}]


def test_open_positions_respect_limit(tmp_path, capsys):
    path = tmp_path / "open.json"
    records = [
        {"id": f"o{i}", "venue": "KRAKEN:main", "asset": asset, "side": "BUY", "price": "10",
         "qty": "1", "timestamp": f"2024-03-0{i + 1}T09:00:00Z"}
        for i, asset in enumerate(["BTC", "ETH", "SOL"])
    ]
    path.write_text(json.dumps(records), encoding="utf-8")
    db = str(tmp_path / "cli.db")
    _run(["--db", db, "ingest", str(path)])
    capsys.readouterr()

    assert _run(["--db", db, "positions", "--limit", "2"]) == 0
    out = capsys.readouterr().out
    assert "1) SOL BUY OPEN" in out
    assert "2) ETH BUY OPEN" in out
    assert "BTC BUY OPEN" not in out
