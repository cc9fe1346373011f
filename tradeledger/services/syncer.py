from typing import Any, Callable, Dict, Iterable, List, Optional
from tradeledger.config.settings import settings
from tradeledger.config.logging import logger
from tradeledger.core.exceptions import DataSourceError, LedgerError, OutOfOrderTradeError, ValidationError
from tradeledger.core.models import IngestFailure, IngestReport, Trade
from tradeledger.infrastructure.sqlite.mapper import to_utc
from tradeledger.infrastructure.sqlite.store import LedgerStore
from .ledger import PositionLedger

class SyncService:
    """
    負責協調成交資料寫入與倉位帳本更新的流程。
    去重 -> 驗證 -> 寫入 trades -> 依時間排序 -> 逐筆套用，並回報每筆失敗原因。
    """
    def __init__(self, store: Optional[LedgerStore] = None, ledger: Optional[PositionLedger] = None):
        # 未注入時依設定建立
        self.store = store or (ledger.store if ledger else LedgerStore(settings.LEDGER_DB_PATH))
        self.ledger = ledger or PositionLedger(self.store)

    def ingest(self, trades: Iterable[Trade], report: Optional[IngestReport] = None) -> IngestReport:
        """處理一批已正規化的成交"""
        report = report or IngestReport()
        logger.info("Starting ingest...")

        # 1. 驗證與去重 (source, external_id)
        new_trades: List[Trade] = []
        for trade in trades:
            try:
                self.ledger.validate(trade)
                stored = self.store.insert_trade(trade)
            except ValidationError as e:
                logger.error(f"Rejected trade {getattr(trade, 'trade_id', '?')}: {e}")
                report.failures.append(IngestFailure(str(getattr(trade, "trade_id", "?")), str(e)))
                continue
            if stored:
                report.added += 1
                new_trades.append(trade)
            else:
                report.skipped += 1

        if not new_trades:
            logger.info(f"No new trades to apply ({report.skipped} duplicates skipped).")
            return report

        # 2. 舊的先套用；同一個 key 前面失敗的話，後面的成交不能跳過它直接套用
        logger.info(f"Found {len(new_trades)} new trades. Applying...")
        blocked: Dict[tuple, str] = {}
        for trade in sorted(new_trades, key=lambda t: (to_utc(t.timestamp), t.trade_id)):
            key = trade.book_key
            if key in blocked:
                report.failures.append(
                    IngestFailure(trade.trade_id, f"Blocked by failed trade {blocked[key]} on {key[0]}@{key[1]}")
                )
                continue
            try:
                effect = self.ledger.apply_trade(trade)
            except OutOfOrderTradeError as e:
                logger.warning(f"Deferred {trade.trade_id} until next recompute: {e}")
                report.deferred.append(trade.trade_id)
                continue
            except (ValidationError, LedgerError) as e:
                logger.error(f"Failed to apply trade {trade.trade_id}: {e}")
                report.failures.append(IngestFailure(trade.trade_id, str(e)))
                blocked[key] = trade.trade_id
                continue
            report.applied += 1
            report.realized_pnl += effect.realized_pnl

        if report.deferred:
            logger.warning(f"{len(report.deferred)} trade(s) arrived out of order. Run recompute to place them.")
        logger.info(
            f"Ingest completed: {report.added} added, {report.skipped} skipped, "
            f"{report.applied} applied, {len(report.failures)} failed"
        )
        return report

    def ingest_raw(self, records: Iterable[Dict[str, Any]], mapper: Callable[[Dict[str, Any]], Trade]) -> IngestReport:
        """將原始紀錄轉換後寫入；無法轉換的紀錄直接回報，不會被默默丟棄"""
        report = IngestReport()
        trades: List[Trade] = []
        for raw in records:
            try:
                trades.append(mapper(raw))
            except DataSourceError as e:
                record_id = str(raw.get("id") or raw.get("execId") or "?") if isinstance(raw, dict) else "?"
                logger.error(f"Unprocessable record {record_id}: {e}")
                report.failures.append(IngestFailure(record_id, str(e)))
        return self.ingest(trades, report)

    def run_recompute(self):
        """以 trades 表全部重建倉位"""
        self.ledger.recompute()
