import pandas as pd
from datetime import date
from pathlib import Path
from typing import List, Optional

from tradeledger.config.settings import settings
from tradeledger.config.logging import logger
from tradeledger.core.exceptions import ValidationError
from tradeledger.core.models import Position, SeriesPoint
from tradeledger.infrastructure.sqlite.store import LedgerStore
from .analytics import AnalyticsService

FORMATS = ("csv", "excel")

class ReporterService:
    """
    Exports ledger positions and bucketed P&L to CSV or Excel files.
    """

    def __init__(self, store: LedgerStore, analytics: Optional[AnalyticsService] = None, report_dir: Optional[str] = None):
        self.store = store
        self.analytics = analytics or AnalyticsService(store)
        self.report_dir = Path(report_dir or (settings.REPORT_DIR if settings else "reports"))

    @staticmethod
    def positions_frame(positions: List[Position]) -> pd.DataFrame:
        """One row per position; Decimal columns become floats for the spreadsheet."""
        records = [
            {
                "Position": p.position_id,
                "Asset": p.asset,
                "Venue": p.venue_key,
                "Side": p.side,
                "Status": p.status,
                "Open Qty": float(p.open_qty),
                "Closed Qty": float(p.closed_qty),
                "Remaining Qty": float(p.remaining_qty),
                "Avg Open": float(p.avg_open_price),
                "Avg Close": float(p.avg_close_price) if p.avg_close_price is not None else None,
                "Realized PnL": float(p.realized_pnl),
                "Fees": float(p.total_fees),
                "Opened": p.opened_at,
                "Closed": p.closed_at,
            }
            for p in positions
        ]
        columns = ["Position", "Asset", "Venue", "Side", "Status", "Open Qty", "Closed Qty",
                   "Remaining Qty", "Avg Open", "Avg Close", "Realized PnL", "Fees", "Opened", "Closed"]
        df = pd.DataFrame(records, columns=columns)
        # Excel cannot store tz-aware datetimes
        for col in ("Opened", "Closed"):
            df[col] = pd.to_datetime(df[col], utc=True).dt.tz_localize(None)
        return df

    @staticmethod
    def series_frame(points: List[SeriesPoint]) -> pd.DataFrame:
        df = pd.DataFrame(
            [{"Bucket": p.bucket_key, "PnL": float(p.pnl)} for p in points],
            columns=["Bucket", "PnL"],
        )
        return df.set_index("Bucket")

    def _save(self, df: pd.DataFrame, name: str, output_format: str, sheet_name: str, index: bool) -> Path:
        if output_format not in FORMATS:
            raise ValidationError(f"Unsupported report format: {output_format}")
        self.report_dir.mkdir(parents=True, exist_ok=True)
        if output_format == 'csv':
            file_path = self.report_dir / f"{name}.csv"
            df.to_csv(file_path, index=index)
        else:
            file_path = self.report_dir / f"{name}.xlsx"
            df.to_excel(file_path, sheet_name=sheet_name, index=index)
        logger.info(f"Successfully saved report to {file_path}")
        return file_path

    def export_positions(self, output_format: str = 'csv', status: Optional[str] = None) -> Path:
        positions = self.store.list_positions(status=status)
        if not positions:
            logger.warning("No positions found. Exporting an empty report.")
        return self._save(self.positions_frame(positions), "positions", output_format, "Positions", index=False)

    def export_series(self, start_date: date, end_date: date, bucket: str = "month", output_format: str = 'csv') -> Path:
        points = self.analytics.series_by_bucket(start_date, end_date, bucket)
        name = f"pnl_{bucket}_{start_date.isoformat()}_{end_date.isoformat()}"
        return self._save(self.series_frame(points), name, output_format, f"PnL by {bucket}", index=True)
