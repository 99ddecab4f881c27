import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from api.metrics import metrics
from config import config
from config.utils import get_config_section, section_value
from ingest.binance_rest import BinanceAPIError
from monitoring.async_utils import SystemClock, cancel_task, system_clock
from persistence.store import SignalStore
from strategy.execution import EXCHANGE_ERRORS, ExecutionManager
from strategy.execution_types import OrderState
from strategy.signal_manager import SignalManager
from strategy.signal_types import Movement, MovementStatus, Signal


logger = logging.getLogger(__name__)

ExecutionLookup = Callable[[str], Optional[ExecutionManager]]


@dataclass
class PollTask:
    movement_id: str
    signal_id: str
    user_id: str
    order_id: str
    next_due: float
    attempts: int = 0
    exhausted_at: Optional[float] = None
    cancelled: bool = False
    by_client_id: bool = False

    @property
    def exhausted(self) -> bool:
        return self.exhausted_at is not None

    def is_due(self, now: float) -> bool:
        return not self.cancelled and not self.exhausted and now >= self.next_due

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class CycleReport:
    swept: int = 0
    recovered: int = 0
    filled: int = 0
    failed: int = 0
    deferred: int = 0
    exhausted: int = 0
    expired: int = 0
    polled: Dict[str, str] = field(default_factory=dict)


class ReconciliationLoop:
    """Brings PENDING movements in line with what the exchange reports.

    Each cycle resolves movements whose submit left no order id, polls the ones
    with an order id using per-movement exponential backoff, and optionally
    expires signals that never filled.
    """

    def __init__(
        self,
        signal_manager: SignalManager,
        execution_lookup: ExecutionLookup,
        store: Optional[SignalStore] = None,
        config_obj: Optional[Any] = None,
        clock: Optional[SystemClock] = None,
    ):
        section = get_config_section(config_obj if config_obj is not None else config, 'reconciliation')
        self.signal_manager = signal_manager
        self.store = store or signal_manager.store
        self.execution_lookup = execution_lookup
        self.clock = clock or system_clock
        self.interval_s = section_value(section, 'interval_s', 15.0)
        self.grace_period_s = section_value(section, 'grace_period_s', 300.0)
        self.max_attempts = section_value(section, 'max_attempts', 20, int)
        self.base_backoff_s = section_value(section, 'base_backoff_s', 5.0)
        self.max_backoff_s = section_value(section, 'max_backoff_s', 120.0)
        self.exhausted_retry_s = section_value(section, 'exhausted_retry_s', 1800.0)
        self.signal_ttl_s = section_value(section, 'signal_ttl_hours', 0.0) * 3600
        self.tasks: Dict[str, PollTask] = {}
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def backoff(self, attempts: int) -> float:
        return min(self.base_backoff_s * (2 ** attempts), self.max_backoff_s)

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        await self._sweep(report)
        await self._poll(report)
        if self.signal_ttl_s > 0:
            report.expired = await self.signal_manager.expire_stale_signals(self.signal_ttl_s)
        metrics.update_pending_polls(len(self.tasks))
        return report

    def _task_for(self, signal: Signal, movement: Movement, order_id: str, now: float,
                  by_client_id: bool = False) -> PollTask:
        task = self.tasks.get(movement.movement_id)
        if task is not None and task.exhausted and now - task.exhausted_at >= self.exhausted_retry_s:
            logger.info("Releasing exhausted poll for movement %s", movement.movement_id)
            self.tasks.pop(movement.movement_id).cancel()
            task = None
        if task is None:
            task = PollTask(
                movement_id=movement.movement_id,
                signal_id=signal.signal_id,
                user_id=signal.user_id,
                order_id=order_id,
                next_due=now,
                by_client_id=by_client_id,
            )
            self.tasks[movement.movement_id] = task
        return task

    def _prune(self, live_ids: Set[str], by_client_id: bool) -> None:
        for movement_id, task in list(self.tasks.items()):
            if task.by_client_id is by_client_id and movement_id not in live_ids:
                self.tasks.pop(movement_id).cancel()

    async def _sweep(self, report: CycleReport) -> None:
        """Resolve movements whose submission never produced an order id.

        A submit that timed out may still have reached the exchange, so live
        movements are looked up by client order id (the movement id) first and
        only failed once the exchange reports the order as unknown.
        """
        now = self.clock.time()
        stale = await self.store.list_pending_movements(with_order_id=False, older_than=now - self.grace_period_s)
        self._prune({movement.movement_id for _, movement in stale}, by_client_id=True)
        for signal, movement in stale:
            execution = self.execution_lookup(signal.user_id)
            if execution is None or execution.paper_mode:
                await self._fail_unsubmitted(movement.movement_id, signal.user_id, now - movement.created_at, report)
                continue
            task = self._task_for(signal, movement, movement.movement_id, now, by_client_id=True)
            if task.is_due(now):
                await self._poll_one(task, execution, now, report, created_at=movement.created_at)
        if report.swept:
            metrics.record_swept(report.swept)

    async def _fail_unsubmitted(self, movement_id: str, user_id: str, age: float, report: CycleReport) -> None:
        logger.warning(
            "[%s] Movement %s never reached the exchange (%.0fs old); marking failed",
            user_id,
            movement_id,
            age,
        )
        changed = await self.signal_manager.update_movement_status(
            movement_id,
            MovementStatus.FAILED,
            {'reason': 'never_submitted', 'age_s': age},
        )
        if changed:
            report.swept += 1

    async def _poll(self, report: CycleReport) -> None:
        now = self.clock.time()
        pending = await self.store.list_pending_movements(with_order_id=True)
        self._prune({movement.movement_id for _, movement in pending}, by_client_id=False)

        for signal, movement in pending:
            task = self._task_for(signal, movement, movement.order_id, now)
            if not task.is_due(now):
                continue

            execution = self.execution_lookup(task.user_id)
            if execution is None:
                logger.debug("No execution context for user %s; skipping %s", task.user_id, task.movement_id)
                continue
            await self._poll_one(task, execution, now, report)

    async def _poll_one(self, task: PollTask, execution: ExecutionManager, now: float, report: CycleReport,
                        created_at: Optional[float] = None) -> None:
        try:
            ticket = await execution.fetch_order_status(task.order_id)
        except EXCHANGE_ERRORS + (KeyError,) as exc:
            if task.by_client_id and isinstance(exc, BinanceAPIError) and exc.is_unknown_order:
                self.tasks.pop(task.movement_id, None)
                task.cancel()
                age = now - created_at if created_at is not None else 0.0
                await self._fail_unsubmitted(task.movement_id, task.user_id, age, report)
                return
            logger.warning(
                "[%s] Status poll for order %s failed (attempt %d): %s",
                task.user_id,
                task.order_id,
                task.attempts + 1,
                exc,
            )
            metrics.record_poll('error')
            self._defer(task, now, report)
            return

        if task.by_client_id:
            logger.warning(
                "[%s] Movement %s reached the exchange as order %s (%s) despite the failed submit",
                task.user_id,
                task.movement_id,
                ticket.id,
                ticket.status,
            )
            await self.signal_manager.link_order(task.movement_id, ticket)
            task.order_id = ticket.id
            task.by_client_id = False
            report.recovered += 1

        state = ticket.state
        report.polled[task.movement_id] = state.value
        metrics.record_poll(state.value)
        if state is OrderState.FILLED:
            if await self.signal_manager.update_movement_status(task.movement_id, MovementStatus.FILLED, ticket):
                report.filled += 1
        elif state is OrderState.FAILED:
            if await self.signal_manager.update_movement_status(task.movement_id, MovementStatus.FAILED, ticket):
                report.failed += 1
        else:
            self._defer(task, now, report)
            return
        self.tasks.pop(task.movement_id, None)
        task.cancel()

    def _defer(self, task: PollTask, now: float, report: CycleReport) -> None:
        task.attempts += 1
        if task.attempts >= self.max_attempts:
            task.exhausted_at = now
            report.exhausted += 1
            metrics.record_poll_exhausted()
            logger.warning(
                "[%s] Giving up on order %s after %d polls; movement %s stays pending",
                task.user_id,
                task.order_id,
                task.attempts,
                task.movement_id,
            )
            return
        task.next_due = now + self.backoff(task.attempts)
        report.deferred += 1

    async def run(self) -> None:
        self.running = True
        logger.info("Reconciliation loop started (every %.0fs)", self.interval_s)
        while self.running:
            try:
                report = await self.run_cycle()
                if report.swept or report.recovered or report.filled or report.failed or report.expired:
                    logger.info(
                        "Reconciliation: swept=%d recovered=%d filled=%d failed=%d expired=%d",
                        report.swept,
                        report.recovered,
                        report.filled,
                        report.failed,
                        report.expired,
                    )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconciliation cycle failed")
            await self.clock.sleep(self.interval_s)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self.running = False
        await cancel_task(self._task)
        self._task = None
        for task in self.tasks.values():
            task.cancel()
        self.tasks.clear()
