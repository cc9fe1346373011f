from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

BUY = "BUY"
SELL = "SELL"
SIDES = (BUY, SELL)

OPEN = "OPEN"
CLOSED = "CLOSED"

ZERO = Decimal("0")


def opposite_side(side: str) -> str:
    return SELL if side == BUY else BUY


@dataclass(frozen=True)
class Trade:
    """
    核心交易模型 (Domain Model)。
    代表一筆已正規化的成交 (交易所成交或鏈上 swap)，建立後不可變。
    """
    trade_id: str          # 唯一識別碼 (ledger 內部 ID，也作為排序 tie-break)
    venue_key: str         # 倉位簿分隔鍵 (交易所帳戶或錢包地址)
    asset: str             # 基礎資產 (e.g., "BTC")
    side: str              # 方向 (BUY, SELL)
    price: Decimal         # 成交價格
    qty: Decimal           # 成交數量
    fee: Decimal           # 手續費
    timestamp: datetime    # 成交時間 (UTC)

    # 去重用的來源鍵 (source, external_id)
    source: str = "MANUAL"
    external_id: Optional[str] = None

    @property
    def dedupe_key(self) -> tuple:
        return (self.source, self.external_id or self.trade_id)

    @property
    def book_key(self) -> tuple:
        return (self.asset, self.venue_key)

    @property
    def notional(self) -> Decimal:
        return self.price * self.qty


@dataclass
class Position:
    """
    倉位模型。
    每個生命週期一筆紀錄；同一 (asset, venue_key) 同時最多只有一筆 OPEN。
    CLOSED 之後不可再被修改。
    """
    position_id: str
    asset: str
    venue_key: str
    side: str
    status: str
    open_qty: Decimal
    closed_qty: Decimal
    remaining_qty: Decimal
    avg_open_price: Decimal
    realized_pnl: Decimal
    total_fees: Decimal
    opened_at: datetime
    avg_close_price: Optional[Decimal] = None
    closed_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    @property
    def book_key(self) -> tuple:
        return (self.asset, self.venue_key)

    def is_profit(self) -> bool:
        return self.realized_pnl > 0

    def copy(self) -> "Position":
        return replace(self)


@dataclass(frozen=True)
class Allocation:
    """Audit record: which slice of a trade landed on which position."""
    position_id: str
    trade_id: str
    matched_qty: Decimal
    seq: int = 0


@dataclass
class LedgerEffect:
    """Result of applying one trade to the ledger."""
    trade_id: str
    created: List[str] = field(default_factory=list)
    mutated: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    realized_pnl: Decimal = ZERO
    allocations: List[Allocation] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)

    @property
    def flipped(self) -> bool:
        # a close followed by a residual opening on the other side
        return bool(self.closed) and bool(self.created)


@dataclass
class PositionDetail:
    position: Position
    allocations: List[Allocation]
    trades: List[Trade]


@dataclass
class MarkedPosition:
    """An open position with its mark-to-market against the current price proxy."""
    position: Position
    current_price: Optional[Decimal]
    unrealized_pnl: Decimal


@dataclass
class PnLSummary:
    """
    損益彙總 (read-only projection)。
    win_rate 為 0~1 的比例；沒有已分類的平倉時為 0。
    """
    total_realized_pnl: Decimal = ZERO
    total_unrealized_pnl: Decimal = ZERO
    total_fees: Decimal = ZERO
    net_pnl: Decimal = ZERO
    win_rate: float = 0.0
    total_closed: int = 0
    winning: int = 0
    losing: int = 0
    open_positions: int = 0
    unpriced_positions: int = 0
    best_position: Optional[Position] = None
    worst_position: Optional[Position] = None


@dataclass(frozen=True)
class SeriesPoint:
    bucket_key: str
    pnl: Decimal


@dataclass(frozen=True)
class IngestFailure:
    trade_id: str
    reason: str


@dataclass
class IngestReport:
    """Per-batch outcome reported back to the ingestion caller."""
    added: int = 0
    skipped: int = 0
    applied: int = 0
    deferred: List[str] = field(default_factory=list)
    failures: List[IngestFailure] = field(default_factory=list)
    realized_pnl: Decimal = ZERO

    @property
    def needs_recompute(self) -> bool:
        return bool(self.deferred)

    @property
    def ok(self) -> bool:
        return not self.failures
