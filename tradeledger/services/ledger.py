from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from tradeledger.config.settings import settings
from tradeledger.config.logging import logger
from tradeledger.core.exceptions import (
    ConcurrentMutationError,
    ConsistencyViolation,
    DataIntegrityError,
    OutOfOrderTradeError,
    PositionNotFoundError,
    RecomputeError,
    ValidationError,
)
from tradeledger.core.models import (
    BUY, CLOSED, OPEN, SIDES, ZERO,
    Allocation, LedgerEffect, Position, PositionDetail, Trade,
)
from tradeledger.infrastructure.sqlite.mapper import to_utc
from tradeledger.infrastructure.sqlite.store import LedgerStore
from .locks import KeyedLocks, RecomputeGate

DEFAULT_EPSILON = Decimal("0.000001")
DEFAULT_MAX_RETRIES = 3
DEFAULT_CLOSED_LIMIT = 100

# a trade touches at most the position it closes and the one its residual opens
MAX_LEGS_PER_TRADE = 2

Touched = List[Tuple[Position, bool]]


class PositionLedger:
    """
    倉位帳本。
    依時間順序逐筆套用成交，以加權平均成本計算已實現損益，並留下 Allocation 稽核紀錄。

    每個 (asset, venue_key) 是一個獨立的狀態機：同一個 key 同時只有一個寫入者，
    不同 key 可並行。recompute 是全域獨佔操作。
    """

    def __init__(
        self,
        store: LedgerStore,
        epsilon: Optional[Decimal] = None,
        max_retries: Optional[int] = None,
    ):
        self.store = store
        if epsilon is None:
            epsilon = settings.CLOSE_EPSILON if settings else DEFAULT_EPSILON
        if max_retries is None:
            max_retries = settings.MAX_MUTATION_RETRIES if settings else DEFAULT_MAX_RETRIES
        self.epsilon = Decimal(epsilon)
        self.max_retries = max(1, int(max_retries))
        self._locks = KeyedLocks()
        self._gate = RecomputeGate()
        self._halted: Dict[tuple, str] = {}

    # ------------------------------------------------------------ validation

    @staticmethod
    def validate(trade: Trade) -> None:
        """Reject malformed trades before anything is read or written."""
        for name in ("trade_id", "asset", "venue_key"):
            value = getattr(trade, name, None)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Trade {getattr(trade, 'trade_id', '?')}: missing {name}")
        if trade.side not in SIDES:
            raise ValidationError(f"Trade {trade.trade_id}: invalid side {trade.side!r}")
        if not isinstance(trade.timestamp, datetime):
            raise ValidationError(f"Trade {trade.trade_id}: timestamp must be a datetime")
        if trade.timestamp.utcoffset() is None:
            raise ValidationError(f"Trade {trade.trade_id}: timestamp must be timezone-aware")
        for name in ("price", "qty", "fee"):
            value = getattr(trade, name)
            if not isinstance(value, Decimal) or not value.is_finite():
                raise ValidationError(f"Trade {trade.trade_id}: {name} must be a finite Decimal, got {value!r}")
        if trade.price <= 0:
            raise DataIntegrityError(f"Trade {trade.trade_id}: price must be positive, got {trade.price}")
        if trade.qty <= 0:
            raise DataIntegrityError(f"Trade {trade.trade_id}: quantity must be positive, got {trade.qty}")
        if trade.fee < 0:
            raise DataIntegrityError(f"Trade {trade.trade_id}: fee must be non-negative, got {trade.fee}")

    # -------------------------------------------------------------- planning

    def plan(self, current: Optional[Position], trade: Trade) -> Tuple[LedgerEffect, Touched]:
        """
        Pure step function: given the OPEN position for the trade's key (or None),
        return the effect and the positions it creates or mutates, in order.
        `current` is never modified.
        """
        effect = LedgerEffect(trade_id=trade.trade_id)
        touched: Touched = []
        position = current.copy() if current is not None else None
        residual = trade.qty
        fee_left = trade.fee

        while residual > 0:
            if len(touched) >= MAX_LEGS_PER_TRADE:
                raise ConsistencyViolation(
                    f"Trade {trade.trade_id} touched more than {MAX_LEGS_PER_TRADE} positions", trade.book_key
                )

            if position is None:
                position = self._open(trade, residual, fee_left)
                touched.append((position, True))
                effect.created.append(position.position_id)
                effect.allocations.append(Allocation(position.position_id, trade.trade_id, residual))
                residual = ZERO

            elif position.side == trade.side:
                self._merge(position, trade, residual, fee_left)
                touched.append((position, False))
                effect.mutated.append(position.position_id)
                effect.allocations.append(Allocation(position.position_id, trade.trade_id, residual))
                residual = ZERO

            else:
                matched = min(position.remaining_qty, residual)
                if residual - matched <= self.epsilon:
                    # dust left over by rounding stays on the position being closed
                    matched = residual
                fee = fee_left if matched == residual else trade.fee * (matched / trade.qty)
                effect.realized_pnl += self._close(position, trade, matched, fee)
                touched.append((position, False))
                effect.mutated.append(position.position_id)
                effect.allocations.append(Allocation(position.position_id, trade.trade_id, matched))
                fee_left -= fee
                residual -= matched
                if position.status == CLOSED:
                    effect.closed.append(position.position_id)
                    position = None

        effect.positions = [p for p, _ in touched]
        return effect, touched

    @staticmethod
    def _open(trade: Trade, qty: Decimal, fee: Decimal) -> Position:
        return Position(
            position_id=f"P-{trade.trade_id}",
            asset=trade.asset,
            venue_key=trade.venue_key,
            side=trade.side,
            status=OPEN,
            open_qty=qty,
            closed_qty=ZERO,
            remaining_qty=qty,
            avg_open_price=trade.price,
            realized_pnl=ZERO,
            total_fees=fee,
            opened_at=to_utc(trade.timestamp),
            version=1,
        )

    @staticmethod
    def _merge(position: Position, trade: Trade, qty: Decimal, fee: Decimal) -> None:
        new_open = position.open_qty + qty
        position.avg_open_price = (position.avg_open_price * position.open_qty + trade.price * qty) / new_open
        position.open_qty = new_open
        position.remaining_qty = new_open - position.closed_qty
        position.total_fees += fee
        position.version += 1

    def _close(self, position: Position, trade: Trade, matched: Decimal, fee: Decimal) -> Decimal:
        if position.side == BUY:
            delta = (trade.price - position.avg_open_price) * matched
        else:
            delta = (position.avg_open_price - trade.price) * matched

        new_closed = position.closed_qty + matched
        if position.avg_close_price is None:
            position.avg_close_price = trade.price
        else:
            position.avg_close_price = (
                position.avg_close_price * position.closed_qty + trade.price * matched
            ) / new_closed
        position.closed_qty = new_closed
        position.remaining_qty = position.open_qty - new_closed
        position.realized_pnl += delta
        position.total_fees += fee
        position.version += 1

        if position.remaining_qty <= self.epsilon:
            position.status = CLOSED
            position.closed_at = to_utc(trade.timestamp)
        return delta

    # ---------------------------------------------------------------- writes

    def apply_trade(self, trade: Trade) -> LedgerEffect:
        """
        Apply one trade to its book and persist the result atomically.

        Raises ValidationError/DataIntegrityError before any read, OutOfOrderTradeError
        when the trade predates what the book already holds, ConsistencyViolation when
        the book is halted, and ConcurrentMutationError once retries are exhausted.
        """
        self.validate(trade)
        key = trade.book_key

        with self._gate.shared(), self._locks.hold(key):
            if key in self._halted:
                raise ConsistencyViolation(
                    f"Book {trade.asset}@{trade.venue_key} is halted ({self._halted[key]}); recompute required", key
                )

            last = self.store.last_applied(*key)
            if last is not None and (to_utc(trade.timestamp), trade.trade_id) < last:
                raise OutOfOrderTradeError(
                    f"Trade {trade.trade_id} at {trade.timestamp} predates {last[1]} on {trade.asset}@{trade.venue_key}"
                )

            last_error = None
            for attempt in range(1, self.max_retries + 1):
                current = self._load_open(key)
                effect, touched = self.plan(current, trade)
                try:
                    effect.allocations = self.store.commit_trade(trade, touched, effect.allocations)
                except ConcurrentMutationError as e:
                    last_error = e
                    logger.warning(f"Conflict applying {trade.trade_id} (attempt {attempt}/{self.max_retries}): {e}")
                    continue
                self._log_effect(trade, effect)
                return effect

            raise ConcurrentMutationError(
                f"Trade {trade.trade_id} not applied after {self.max_retries} attempts: {last_error}"
            ) from last_error

    def _load_open(self, key: tuple) -> Optional[Position]:
        rows = self.store.find_open_positions(*key)
        if len(rows) > 1:
            self._halt(key, f"{len(rows)} OPEN positions: {', '.join(p.position_id for p in rows)}")
        if not rows:
            return None
        position = rows[0]
        if position.remaining_qty != position.open_qty - position.closed_qty or position.remaining_qty <= self.epsilon:
            self._halt(key, f"position {position.position_id} quantities drifted")
        return position

    def _halt(self, key: tuple, reason: str) -> None:
        self._halted[key] = reason
        logger.error(f"Halting ingestion for {key[0]}@{key[1]}: {reason}")
        raise ConsistencyViolation(f"Book {key[0]}@{key[1]} violates ledger invariants: {reason}", key)

    @staticmethod
    def _log_effect(trade: Trade, effect: LedgerEffect) -> None:
        for position in effect.positions:
            pid = position.position_id
            if pid in effect.created:
                logger.info(f"Created new {position.side} position for {position.asset}@{position.venue_key}: {pid}")
            elif pid in effect.closed:
                logger.info(f"Closed position {pid}. Realized P&L: {position.realized_pnl}")
            else:
                logger.debug(
                    f"Applied {trade.trade_id} to {pid}: remaining={position.remaining_qty} avg={position.avg_open_price}"
                )
        if effect.flipped:
            logger.info(f"Trade {trade.trade_id} flipped {trade.asset}@{trade.venue_key} to {trade.side}")

    def recompute(self, trades: Optional[Iterable[Trade]] = None) -> None:
        """
        Rebuild every Position and Allocation from trade history.

        With no argument the stored trades are replayed. Replay order is
        (timestamp, trade_id), so the result does not depend on storage order.
        The new tables are swapped in by one transaction; on any failure the
        previous state is left as it was and RecomputeError is raised.
        """
        with self._gate.exclusive():
            logger.info("Starting position recalculation...")
            try:
                source = list(trades) if trades is not None else self.store.list_trades()
                positions, allocations, ordered = self._replay(source)
                self.store.replace_all(ordered, positions, allocations)
            except Exception as e:
                logger.error(f"Recompute failed, previous ledger state kept: {e}")
                raise RecomputeError(f"Recompute failed: {e}") from e

            if self._halted:
                logger.info(f"Releasing halted books: {sorted(self._halted)}")
            self._halted.clear()
            logger.info(f"Position recalculation completed: {len(ordered)} trades, {len(positions)} positions")

    def _replay(self, trades: List[Trade]) -> Tuple[List[Position], List[Allocation], List[Trade]]:
        seen = set()
        for trade in trades:
            self.validate(trade)
            if trade.trade_id in seen:
                raise ValidationError(f"Trade {trade.trade_id} appears twice in replay input")
            seen.add(trade.trade_id)

        ordered = sorted(trades, key=lambda t: (to_utc(t.timestamp), t.trade_id))
        open_by_key: Dict[tuple, Optional[Position]] = {}
        positions: Dict[str, Position] = {}
        allocations: List[Allocation] = []

        for trade in ordered:
            effect, touched = self.plan(open_by_key.get(trade.book_key), trade)
            for position, _ in touched:
                positions[position.position_id] = position
            open_by_key[trade.book_key] = next((p for p, _ in reversed(touched) if p.is_open), None)
            for alloc in effect.allocations:
                allocations.append(Allocation(alloc.position_id, alloc.trade_id, alloc.matched_qty, len(allocations) + 1))

        return list(positions.values()), allocations, ordered

    # ----------------------------------------------------------------- reads

    def get_open_positions(self) -> List[Position]:
        return self.store.list_positions(status=OPEN)

    def get_closed_positions(self, limit: Optional[int] = None) -> List[Position]:
        if limit is None:
            limit = settings.DEFAULT_CLOSED_LIMIT if settings else DEFAULT_CLOSED_LIMIT
        return self.store.list_positions(status=CLOSED, limit=limit)

    def get_position(self, asset: str, venue_key: str) -> Optional[Position]:
        """The OPEN position for (asset, venue_key), or None."""
        rows = self.store.find_open_positions(asset, venue_key)
        return rows[0] if rows else None

    def get_position_by_id(self, position_id: str) -> Position:
        position = self.store.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(f"Position {position_id} not found")
        return position

    def get_position_detail(self, position_id: str) -> PositionDetail:
        position = self.get_position_by_id(position_id)
        return PositionDetail(
            position=position,
            allocations=self.store.list_allocations(position_id=position_id),
            trades=self.store.get_trades_for_position(position_id),
        )

    @property
    def halted_books(self) -> Dict[tuple, str]:
        return dict(self._halted)
