import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from analytics.candles import Candle, CandleWindow
from analytics.indicators import IndicatorCalculator, IndicatorSnapshot
from api.metrics import metrics
from monitoring.async_utils import SystemClock, system_clock
from monitoring.signal_auditor import SignalAuditor
from strategy.decision_engine import DecisionEngine
from strategy.execution import ExecutionManager
from strategy.signal_manager import SignalManager
from strategy.signal_types import Movement, MovementType, UserConfig


logger = logging.getLogger(__name__)


@dataclass
class UserContext:
    config: UserConfig
    execution: ExecutionManager

    @property
    def user_id(self) -> str:
        return self.config.user_id

    @property
    def paper(self) -> bool:
        return self.execution.paper_mode


class MultiTenantOrchestrator:
    """Drives every user from one candle stream, one tick at a time.

    Ticks are serialized by a lock; indicators are computed once per tick and
    shared by all users. A failure while handling one user is logged and does
    not stop the others.
    """

    def __init__(
        self,
        window: CandleWindow,
        calculator: IndicatorCalculator,
        engine: DecisionEngine,
        signal_manager: SignalManager,
        auditor: Optional[SignalAuditor] = None,
        clock: Optional[SystemClock] = None,
    ):
        self.window = window
        self.calculator = calculator
        self.engine = engine
        self.signal_manager = signal_manager
        self.auditor = auditor
        self.clock = clock or system_clock
        self.users: Dict[str, UserContext] = {}
        self.last_snapshot: Optional[IndicatorSnapshot] = None
        self._tick_lock = asyncio.Lock()

    @property
    def symbol(self) -> str:
        return self.window.symbol

    @property
    def min_history(self) -> int:
        return max(self.engine.min_candles, self.calculator.required_history)

    def add_user(self, user: UserConfig, execution: ExecutionManager) -> UserContext:
        ctx = UserContext(config=user, execution=execution)
        self.users[user.user_id] = ctx
        logger.info("User %s added (%s)", user.user_id, "paper" if ctx.paper else "live")
        return ctx

    def remove_user(self, user_id: str) -> Optional[UserContext]:
        ctx = self.users.pop(user_id, None)
        if ctx is not None:
            logger.info("User %s removed", user_id)
        return ctx

    def execution_for(self, user_id: str) -> Optional[ExecutionManager]:
        ctx = self.users.get(user_id)
        return ctx.execution if ctx else None

    def users_summary(self) -> List[Dict[str, Any]]:
        return [
            {**ctx.config.to_dict(), 'paper_trading': ctx.paper}
            for ctx in self.users.values()
        ]

    def _reset_daily_counters(self) -> None:
        today = self.clock.today().isoformat()
        for ctx in self.users.values():
            if ctx.config.reset_daily_counter(today):
                logger.info("[%s] Daily signal counter reset for %s", ctx.user_id, today)

    async def on_candle(self, candle: Candle) -> Optional[IndicatorSnapshot]:
        async with self._tick_lock:
            started = time.perf_counter()
            if not candle.is_valid():
                logger.warning("Skipping invalid candle at %s: %s", candle.timestamp, candle)
                metrics.record_drop('invalid')
                return None

            self._reset_daily_counters()
            if not self.window.append(candle):
                metrics.record_drop('out_of_order')
                return None
            metrics.record_candle(candle.close)

            if self.window.count() < self.min_history:
                logger.debug("Warming up: %d/%d candles", self.window.count(), self.min_history)
                return None
            snap = self.calculator.compute(self.window.snapshot())
            if snap is None:
                logger.debug("Indicators undefined at %s; tick skipped", candle.timestamp)
                return None
            self.last_snapshot = snap
            metrics.update_indicators(snap.rsi, snap.atr)

            for ctx in list(self.users.values()):
                try:
                    await self._process_user(ctx, snap)
                except Exception:
                    logger.exception("[%s] Tick processing failed", ctx.user_id)
            metrics.record_tick_latency(time.perf_counter() - started)
            return snap

    async def _process_user(self, ctx: UserContext, snap: IndicatorSnapshot) -> None:
        await self._evaluate_exits(ctx, snap)
        await self._evaluate_entry(ctx, snap)

    async def _evaluate_exits(self, ctx: UserContext, snap: IndicatorSnapshot) -> None:
        signals = await self.signal_manager.get_active_signals(ctx.user_id)
        metrics.update_active_signals(ctx.user_id, len(signals))
        for signal in signals:
            if not signal.ready_to_sell:
                continue
            plan = self.engine.plan_exit(signal, ctx.config, snap)
            if plan is None:
                continue
            movement = await self.signal_manager.open_exit(signal, plan)
            if movement is None:
                continue
            ctx.config.daily_signal_count += 1
            await self._submit(ctx, movement)

    async def _evaluate_entry(self, ctx: UserContext, snap: IndicatorSnapshot) -> None:
        user = ctx.config
        if user.daily_cap_reached:
            metrics.record_entry_evaluation('daily_cap')
            logger.debug("[%s] Daily cap %d reached; entries paused", user.user_id, user.max_daily_signals)
            return
        exposure = await self.signal_manager.count_exposure(user.user_id)
        if exposure >= user.max_active_signals:
            metrics.record_entry_evaluation('exposure')
            return

        evaluation = self.engine.evaluate_entry_conditions(snap)
        plan = self.engine.plan_from_evaluation(user, snap, evaluation)
        outcome = evaluation.reason or 'qualified'
        signal = None
        if plan is not None:
            signal = await self.signal_manager.open_signal(user, plan, ctx.paper)
            outcome = 'opened' if signal is not None else 'refused'
        metrics.record_entry_evaluation(outcome)
        if self.auditor is not None and evaluation.qualifies:
            self.auditor.record_decision(
                user.user_id,
                self.symbol,
                outcome,
                evaluation.conditions,
                snap.to_dict(),
                {'signal_id': signal.signal_id if signal else None},
            )
        if signal is None:
            return

        user.daily_signal_count += 1
        for buy in signal.movements_of(MovementType.BUY):
            await self._submit(ctx, buy)

    async def _submit(self, ctx: UserContext, movement: Movement) -> None:
        outcome = await ctx.execution.execute_movement(self.symbol, movement)
        if outcome.ticket is not None:
            await self.signal_manager.record_submission(movement.movement_id, outcome.ticket)
        elif outcome.rejected:
            await self.signal_manager.record_rejection(movement.movement_id, outcome.error or {})
        else:
            logger.warning(
                "[%s] %s movement %s not submitted (%s); left pending",
                ctx.user_id,
                movement.type.value.upper(),
                movement.movement_id,
                (outcome.error or {}).get('reason'),
            )
            await self.signal_manager.store.update_movement(movement.movement_id, order_error=outcome.error)
