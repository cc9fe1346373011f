from decimal import Decimal
from typing import List
from tradeledger.core.models import IngestReport, MarkedPosition, PnLSummary, Position, SeriesPoint

def _money(value: Decimal, places: int = 2) -> str:
    sign = '+' if value > 0 else ''
    return f"{sign}{value:,.{places}f}"

def _qty(value: Decimal) -> str:
    return f"{value.normalize():f}" if value == value.to_integral() else f"{value:.6f}".rstrip("0")

class ReportFormatter:
    @staticmethod
    def format_summary(summary: PnLSummary, title: str = "P&L Summary") -> str:
        """
        Formats a PnLSummary into a plain-text block for the terminal.
        """
        lines = [f"📊 {title}"]
        lines.append(f"Closed positions: {summary.total_closed}")
        lines.append(f"Open positions: {summary.open_positions}")
        lines.append("")

        lines.append("💰 P&L")
        lines.append(f"Realized: {_money(summary.total_realized_pnl)}")
        lines.append(f"Unrealized: {_money(summary.total_unrealized_pnl)}")
        lines.append(f"Fees: {summary.total_fees:,.2f}")
        lines.append(f"Net: {_money(summary.net_pnl)}")
        lines.append("")

        lines.append("🔢 Win/Loss")
        lines.append(f"Win rate: {round(summary.win_rate * 100, 1)}%")
        lines.append(f"Winning: {summary.winning}  Losing: {summary.losing}")

        if summary.best_position is not None:
            best = summary.best_position
            worst = summary.worst_position
            lines.append(f"Best: {best.asset} {best.side} {_money(best.realized_pnl)}")
            lines.append(f"Worst: {worst.asset} {worst.side} {_money(worst.realized_pnl)}")

        if summary.unpriced_positions:
            lines.append("")
            lines.append(f"⚠️ {summary.unpriced_positions} open position(s) without a price, excluded from unrealized P&L")

        return "\n".join(lines)

    @staticmethod
    def format_series(points: List[SeriesPoint], bucket: str) -> str:
        if not points:
            return f"📈 P&L by {bucket}\n\nNo closed positions in range 💤"
        lines = [f"📈 P&L by {bucket}"]
        width = max(len(p.bucket_key) for p in points)
        for point in points:
            lines.append(f"{point.bucket_key.ljust(width)}  {_money(point.pnl)}")
        lines.append(f"{'Total'.ljust(width)}  {_money(sum((p.pnl for p in points), Decimal('0')))}")
        return "\n".join(lines)

    @staticmethod
    def format_positions(positions: List[Position], marks: List[MarkedPosition] = None) -> str:
        if not positions and not marks:
            return "🧾 Positions\n\nNo positions 💤"
        lines = ["🧾 Positions"]
        marked = {m.position.position_id: m for m in (marks or [])}
        rows = list(positions) + [m.position for m in (marks or []) if m.position not in positions]
        for i, p in enumerate(rows, 1):
            line = (
                f"{i}) {p.asset} {p.side} {p.status} @ {p.venue_key} "
                f"qty {_qty(p.remaining_qty)}/{_qty(p.open_qty)} avg {p.avg_open_price:,.4f} "
                f"realized {_money(p.realized_pnl)}"
            )
            mark = marked.get(p.position_id)
            if mark is not None:
                if mark.current_price is None:
                    line += " (no price)"
                else:
                    line += f" unrealized {_money(mark.unrealized_pnl)} @ {mark.current_price:,.4f}"
            lines.append(line)
        return "\n".join(lines)

    @staticmethod
    def format_ingest_report(report: IngestReport) -> str:
        lines = ["📥 Ingest"]
        lines.append(f"Added: {report.added}  Skipped: {report.skipped}  Applied: {report.applied}")
        lines.append(f"Realized P&L: {_money(report.realized_pnl)}")
        if report.deferred:
            lines.append(f"Deferred (run recompute): {', '.join(report.deferred)}")
        if report.failures:
            lines.append("")
            lines.append("❌ Failures")
            for failure in report.failures:
                lines.append(f"{failure.trade_id}: {failure.reason}")
        return "\n".join(lines)
