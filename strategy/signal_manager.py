import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from api.metrics import metrics
from api.notifications import TradeNotifier, TradeReport, format_duration, trade_notifier
from monitoring.async_utils import SystemClock, system_clock
from monitoring.signal_auditor import SignalAuditor
from persistence.store import SignalStore
from strategy.decision_engine import EntryPlan, ExitPlan
from strategy.execution_types import OrderState, OrderTicket
from strategy.signal_types import (
    InvalidNumericError,
    InvalidTransitionError,
    Movement,
    MovementStatus,
    MovementType,
    Signal,
    SignalStatus,
    UserConfig,
    ensure_finite,
)


logger = logging.getLogger(__name__)

OrderData = Union[OrderTicket, Dict[str, Any], None]


class SignalManager:
    """Owns the Signal/Movement lifecycle on top of a ``SignalStore``.

    Every movement status change and the closure check it triggers run under a
    per-signal lock, and closure itself is conditional in the store, so a signal
    is matched at most once no matter how many pollers see the fill.
    """

    def __init__(
        self,
        store: SignalStore,
        notifier: Optional[TradeNotifier] = None,
        auditor: Optional[SignalAuditor] = None,
        clock: Optional[SystemClock] = None,
    ):
        self.store = store
        self.notifier = notifier or trade_notifier
        self.auditor = auditor
        self.clock = clock or system_clock
        self._locks: Dict[str, List[Any]] = {}

    @asynccontextmanager
    async def _signal_lock(self, signal_id: str) -> AsyncIterator[None]:
        # [lock, holders + waiters]; removed only once the count drops to zero.
        entry = self._locks.get(signal_id)
        if entry is None:
            entry = self._locks[signal_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and self._locks.get(signal_id) is entry:
                del self._locks[signal_id]

    def _audit(self, entity: str, entity_id: str, signal_id: str, from_status: Optional[str],
               to_status: str, details: Optional[Dict[str, Any]] = None) -> None:
        if self.auditor is not None:
            self.auditor.record_transition(entity, entity_id, signal_id, from_status, to_status, details)

    async def count_exposure(self, user_id: str) -> int:
        signals = await self.store.list_active_signals(user_id)
        return sum(1 for s in signals if s.holds_exposure)

    async def open_signal(self, user: UserConfig, plan: EntryPlan, paper: bool) -> Optional[Signal]:
        exposure = await self.count_exposure(user.user_id)
        if exposure >= user.max_active_signals:
            logger.info(
                "[%s] Entry refused: %d open positions at limit %d",
                user.user_id,
                exposure,
                user.max_active_signals,
            )
            return None

        snap = plan.snapshot
        now = self.clock.time()
        signal = Signal(
            user_id=user.user_id,
            symbol=plan.symbol,
            initial_price=plan.price,
            stop_loss=plan.stop_loss,
            take_profit=plan.take_profit,
            atr=snap.atr,
            rsi=snap.rsi,
            macd=snap.macd.macd,
            sma_short=snap.sma_short,
            sma_long=snap.sma_long,
            volume=snap.current_volume,
            paper_trading=paper,
            created_at=now,
        )
        buy = Movement(
            signal_id=signal.signal_id,
            type=MovementType.BUY,
            price=plan.price,
            quantity=plan.quantity,
            total_amount=plan.total_amount,
            commission=plan.commission,
            net_amount=plan.net_amount,
            created_at=now,
        )
        try:
            signal.validate()
            buy.validate()
        except InvalidNumericError as exc:
            logger.error("[%s] Entry abandoned: %s", user.user_id, exc)
            return None

        await self.store.create_signal(signal)
        await self.store.create_movement(buy)
        metrics.record_signal_opened()
        metrics.record_movement_created(MovementType.BUY.value)
        self._audit('signal', signal.signal_id, signal.signal_id, None, SignalStatus.ACTIVE.value)
        self._audit('movement', buy.movement_id, signal.signal_id, None, MovementStatus.PENDING.value,
                    {'type': MovementType.BUY.value, 'price': buy.price, 'quantity': buy.quantity})
        logger.info(
            "[%s] Signal %s opened: BUY %.5f %s @ %.2f",
            user.user_id,
            signal.signal_id,
            buy.quantity,
            signal.symbol,
            buy.price,
        )
        return await self.store.get_signal(signal.signal_id)

    async def open_exit(self, signal: Signal, plan: ExitPlan) -> Optional[Movement]:
        async with self._signal_lock(signal.signal_id):
            current = await self.store.get_signal(signal.signal_id)
            if current is None or not current.ready_to_sell:
                return None
            sell = Movement(
                signal_id=current.signal_id,
                type=MovementType.SELL,
                price=plan.price,
                quantity=plan.quantity,
                total_amount=plan.total_amount,
                commission=plan.commission,
                net_amount=plan.net_amount,
                created_at=self.clock.time(),
            )
            try:
                sell.validate()
            except InvalidNumericError as exc:
                logger.error("[%s] Exit abandoned for %s: %s", current.user_id, current.signal_id, exc)
                return None
            await self.store.create_movement(sell)
        metrics.record_movement_created(MovementType.SELL.value)
        self._audit('movement', sell.movement_id, sell.signal_id, None, MovementStatus.PENDING.value,
                    {'type': MovementType.SELL.value, 'price': sell.price, 'strategy': plan.strategy})
        return sell

    async def link_order(self, movement_id: str, ticket: OrderTicket) -> Optional[Movement]:
        movement = await self.store.update_movement(
            movement_id,
            order_id=ticket.id,
            client_order_id=ticket.client_order_id,
            order_response=ticket.as_dict(),
        )
        if movement is None:
            logger.warning("Order %s linked to unknown movement %s", ticket.id, movement_id)
        return movement

    async def record_submission(self, movement_id: str, ticket: OrderTicket) -> Optional[Movement]:
        """Link the exchange order to the movement and apply any status the ack already carries."""
        if await self.link_order(movement_id, ticket) is None:
            return None
        state = ticket.state
        if state is OrderState.FILLED:
            await self.update_movement_status(movement_id, MovementStatus.FILLED, ticket)
        elif state is OrderState.FAILED:
            await self.update_movement_status(movement_id, MovementStatus.FAILED, ticket)
        return await self.store.get_movement(movement_id)

    async def record_rejection(self, movement_id: str, error: Dict[str, Any]) -> bool:
        return await self.update_movement_status(movement_id, MovementStatus.FAILED, error)

    async def update_movement_status(
        self,
        movement_id: str,
        status: MovementStatus,
        order_data: OrderData = None,
    ) -> bool:
        movement = await self.store.get_movement(movement_id)
        if movement is None:
            logger.warning("Status update for unknown movement %s", movement_id)
            return False
        if movement.status is status:
            return False

        signal_id = movement.signal_id
        async with self._signal_lock(signal_id):
            fields = self._status_fields(movement, status, order_data)
            try:
                changed = await self.store.transition_movement(
                    movement_id, MovementStatus.PENDING, status, **fields
                )
            except InvalidTransitionError as exc:
                logger.warning("Ignoring movement update %s: %s", movement_id, exc)
                return False
            if not changed:
                logger.debug("Movement %s already resolved; %s ignored", movement_id, status.value)
                return False

            metrics.record_movement_resolved(movement.type.value, status.value)
            self._audit('movement', movement_id, signal_id, MovementStatus.PENDING.value, status.value)
            logger.info("Movement %s (%s) -> %s", movement_id, movement.type.value, status.value)

            if status is MovementStatus.FILLED:
                await self._close_locked(signal_id)
            elif movement.type is MovementType.BUY:
                await self._cancel_locked(signal_id)
        return True

    def _status_fields(self, movement: Movement, status: MovementStatus, order_data: OrderData) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if isinstance(order_data, OrderTicket):
            if status is MovementStatus.FILLED:
                fields['order_response'] = order_data.as_dict()
                fill_price = order_data.fill_price
                if order_data.executed_qty > 0 and fill_price:
                    total = fill_price * order_data.executed_qty
                    commission = movement.commission / movement.total_amount * total if movement.total_amount else 0.0
                    fields.update(
                        price=fill_price,
                        quantity=order_data.executed_qty,
                        total_amount=total,
                        commission=commission,
                        net_amount=total + commission if movement.type is MovementType.BUY else total - commission,
                    )
            else:
                fields['order_error'] = {'reason': 'exchange_status', 'status': order_data.status}
        elif isinstance(order_data, dict):
            key = 'order_response' if status is MovementStatus.FILLED else 'order_error'
            fields[key] = order_data
        if status is MovementStatus.FILLED:
            fields['executed_at'] = self.clock.time()
        try:
            ensure_finite('Movement', {k: v for k, v in fields.items() if k in Movement.NUMERIC_FIELDS})
        except InvalidNumericError as exc:
            logger.error("Discarding fill details for %s: %s", movement.movement_id, exc)
            fields = {k: v for k, v in fields.items() if k not in Movement.NUMERIC_FIELDS}
        return fields

    async def check_and_close(self, signal_id: str) -> bool:
        async with self._signal_lock(signal_id):
            return await self._close_locked(signal_id)

    async def _close_locked(self, signal_id: str) -> bool:
        signal = await self.store.get_signal(signal_id)
        if signal is None or signal.status is not SignalStatus.ACTIVE or not signal.is_closable:
            return False

        buys = signal.filled_buys
        sells = signal.filled_sells
        buy_amount = sum(m.total_amount for m in buys)
        sell_amount = sum(m.total_amount for m in sells)
        sell_qty = sum(m.quantity for m in sells)
        commission = sum(m.commission for m in buys + sells)
        avg_sell = sell_amount / sell_qty if sell_qty else 0.0
        gross = sell_amount - buy_amount
        net = gross - commission
        closed_at = self.clock.time()
        totals = {
            'final_price': avg_sell,
            'total_profit': gross,
            'total_commission': commission,
            'net_profit': net,
        }
        try:
            ensure_finite('Signal closure', totals)
        except InvalidNumericError as exc:
            logger.error("Closure of %s abandoned: %s", signal_id, exc)
            return False

        closed = await self.store.close_signal(signal_id, SignalStatus.MATCHED, closed_at=closed_at, **totals)
        if not closed:
            return False

        metrics.record_signal_closed(SignalStatus.MATCHED.value)
        metrics.record_pnl(net)
        self._audit('signal', signal_id, signal_id, SignalStatus.ACTIVE.value, SignalStatus.MATCHED.value, totals)
        logger.info(
            "[%s] Signal %s matched: gross %.4f commission %.4f net %.4f",
            signal.user_id,
            signal_id,
            gross,
            commission,
            net,
        )

        for key, value in totals.items():
            setattr(signal, key, value)
        signal.status = SignalStatus.MATCHED
        signal.closed_at = closed_at
        report = self.build_trade_report(signal)
        try:
            await self.notifier.send_trade_report(report)
        except Exception:
            logger.exception("Trade report for %s could not be sent", signal_id)
        return True

    async def cancel_if_unfilled(self, signal_id: str) -> bool:
        async with self._signal_lock(signal_id):
            return await self._cancel_locked(signal_id)

    async def _cancel_locked(self, signal_id: str) -> bool:
        signal = await self.store.get_signal(signal_id)
        if signal is None or signal.status is not SignalStatus.ACTIVE or signal.live_buys:
            return False
        closed = await self.store.close_signal(signal_id, SignalStatus.CANCELLED, closed_at=self.clock.time())
        if closed:
            metrics.record_signal_closed(SignalStatus.CANCELLED.value)
            self._audit('signal', signal_id, signal_id, SignalStatus.ACTIVE.value, SignalStatus.CANCELLED.value)
            logger.info("[%s] Signal %s cancelled: BUY never filled", signal.user_id, signal_id)
        return closed

    async def expire_stale_signals(self, max_age_s: float) -> int:
        """Expire ACTIVE signals older than ``max_age_s`` that never filled and have no live order."""
        cutoff = self.clock.time() - max_age_s
        expired = 0
        for signal in await self.store.list_active_signals():
            if signal.created_at >= cutoff:
                continue
            if any(m.status is MovementStatus.FILLED for m in signal.movements):
                continue
            if any(m.status is MovementStatus.PENDING and m.order_id for m in signal.movements):
                continue
            async with self._signal_lock(signal.signal_id):
                for movement in signal.movements:
                    if movement.status is MovementStatus.PENDING:
                        await self.store.transition_movement(
                            movement.movement_id,
                            MovementStatus.PENDING,
                            MovementStatus.CANCELLED,
                            order_error={'reason': 'signal_expired'},
                        )
                closed = await self.store.close_signal(
                    signal.signal_id, SignalStatus.EXPIRED, closed_at=self.clock.time()
                )
            if closed:
                expired += 1
                metrics.record_signal_closed(SignalStatus.EXPIRED.value)
                self._audit('signal', signal.signal_id, signal.signal_id,
                            SignalStatus.ACTIVE.value, SignalStatus.EXPIRED.value)
                logger.info("[%s] Signal %s expired unfilled", signal.user_id, signal.signal_id)
        return expired

    async def get_active_signals(self, user_id: Optional[str] = None) -> List[Signal]:
        active: List[Signal] = []
        for signal in await self.store.list_active_signals(user_id):
            if signal.is_closable:
                logger.warning(
                    "Signal %s is ACTIVE with both legs filled; closing it now",
                    signal.signal_id,
                )
                await self.check_and_close(signal.signal_id)
                continue
            active.append(signal)
        return active

    async def statistics(self, user_id: Optional[str] = None) -> Dict[str, float]:
        return await self.store.statistics(user_id)

    async def history(self, limit: int = 50, user_id: Optional[str] = None) -> List[Signal]:
        return await self.store.list_signals(limit=limit, user_id=user_id)

    def build_trade_report(self, signal: Signal) -> TradeReport:
        buys = signal.filled_buys
        sells = signal.filled_sells
        buy_amount = sum(m.total_amount for m in buys)
        buy_qty = sum(m.quantity for m in buys)
        sell_amount = sum(m.total_amount for m in sells)
        sell_qty = sum(m.quantity for m in sells)
        avg_buy = buy_amount / buy_qty if buy_qty else 0.0
        avg_sell = sell_amount / sell_qty if sell_qty else 0.0
        closed_at = signal.closed_at or self.clock.time()
        return TradeReport(
            signal_id=signal.signal_id,
            user_id=signal.user_id,
            symbol=signal.symbol,
            buy_price=avg_buy,
            sell_price=avg_sell,
            quantity=sell_qty,
            total_buy_amount=buy_amount,
            total_sell_amount=sell_amount,
            gross_profit=signal.total_profit,
            total_commission=signal.total_commission,
            net_profit=signal.net_profit,
            profit_percent=(avg_sell - avg_buy) / avg_buy * 100 if avg_buy else 0.0,
            roi=signal.net_profit / buy_amount * 100 if buy_amount else 0.0,
            duration=format_duration(closed_at - signal.created_at),
            paper_trading=signal.paper_trading,
        )
