import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ingest.binance_rest import BinanceAPIError, MalformedResponseError
from orchestration.reconciliation import ReconciliationLoop
from persistence.store import InMemorySignalStore
from strategy.decision_engine import DecisionEngine
from strategy.execution import ExecutionManager
from strategy.signal_manager import SignalManager
from strategy.signal_types import MovementStatus, SignalStatus, UserConfig
from tests.fakes import FakeClock, FakeTransport, RecordingNotifier, make_config, make_snapshot, order_payload, _ticket


class Harness:
    def __init__(self, status_results=None, create_results=None, transport=None, **reconciliation):
        self.cfg = make_config(reconciliation=reconciliation)
        self.clock = FakeClock()
        self.store = InMemorySignalStore()
        self.notifier = RecordingNotifier()
        self.manager = SignalManager(self.store, notifier=self.notifier, clock=self.clock)
        self.engine = DecisionEngine(self.cfg)
        self.transport = transport or FakeTransport(create_results=create_results, status_results=status_results)
        self.execution = ExecutionManager('u1', self.transport, paper_mode=False, config_obj=self.cfg)
        self.user = UserConfig('u1')
        self.loop = self.new_loop()

    def new_loop(self):
        return ReconciliationLoop(
            self.manager,
            {'u1': self.execution}.get,
            config_obj=self.cfg,
            clock=self.clock,
        )

    async def open(self, submit=True):
        plan = self.engine.plan_entry(self.user, make_snapshot())
        signal = await self.manager.open_signal(self.user, plan, paper=False)
        buy = signal.movements[0]
        if submit:
            outcome = await self.execution.execute_movement('BTCUSDT', buy)
            if outcome.ticket is not None:
                await self.manager.record_submission(buy.movement_id, outcome.ticket)
        return signal, await self.store.get_movement(buy.movement_id)


def test_fill_seen_by_concurrent_pollers_applies_once():
    async def _run():
        h = Harness(status_results=[order_payload(1001, 'FILLED', qty=0.0002, quote=20.04)])
        signal, buy = await h.open()
        assert buy.order_id == '1001'

        other = h.new_loop()
        first, second = await asyncio.gather(h.loop.run_cycle(), other.run_cycle())
        assert first.filled + second.filled == 1

        filled = await h.store.get_movement(buy.movement_id)
        assert filled.status is MovementStatus.FILLED
        assert filled.price == pytest.approx(100200.0)
        assert filled.executed_at == h.clock.time()
        assert (await h.store.get_signal(signal.signal_id)).status is SignalStatus.ACTIVE
        assert h.loop.tasks == {}

        again = await h.loop.run_cycle()
        assert again.filled == 0
        assert len(h.transport.status_calls) <= 2

    asyncio.run(_run())


def test_sell_fill_matches_signal_once():
    async def _run():
        h = Harness(status_results=[
            order_payload(1001, 'FILLED', qty=0.0002, quote=20.0),
            order_payload(1002, 'FILLED', side='SELL', qty=0.0002, price=101000.0, quote=20.2),
        ])
        signal, _ = await h.open()
        await h.loop.run_cycle()
        signal = await h.store.get_signal(signal.signal_id)

        plan = h.engine.plan_exit(signal, h.user, make_snapshot(close=101000.0))
        sell = await h.manager.open_exit(signal, plan)
        outcome = await h.execution.execute_movement('BTCUSDT', sell)
        await h.manager.record_submission(sell.movement_id, outcome.ticket)

        report = await h.loop.run_cycle()
        assert report.filled == 1
        await h.loop.run_cycle()
        closed = await h.store.get_signal(signal.signal_id)
        assert closed.status is SignalStatus.MATCHED
        assert closed.net_profit == pytest.approx(0.1598)
        assert len(h.notifier.reports) == 1

    asyncio.run(_run())


def test_never_submitted_movement_is_swept_after_grace_period():
    async def _run():
        h = Harness()
        signal, buy = await h.open(submit=False)

        h.clock.advance(100)
        assert (await h.loop.run_cycle()).swept == 0

        h.clock.advance(201)
        report = await h.loop.run_cycle()
        assert report.swept == 1
        failed = await h.store.get_movement(buy.movement_id)
        assert failed.status is MovementStatus.FAILED
        assert failed.order_error['reason'] == 'never_submitted'
        assert (await h.store.get_signal(signal.signal_id)).status is SignalStatus.CANCELLED
        assert h.transport.status_calls == [buy.movement_id]

    asyncio.run(_run())


def test_backoff_is_exponential_and_capped():
    loop = Harness().loop
    assert loop.backoff(0) == 5
    assert loop.backoff(1) == 10
    assert loop.backoff(3) == 40
    assert loop.backoff(10) == 120


def test_open_order_polls_back_off_then_exhaust_and_release():
    async def _run():
        h = Harness(status_results=[order_payload(1001, 'NEW')])
        _, buy = await h.open()

        report = await h.loop.run_cycle()
        assert report.deferred == 1
        task = h.loop.tasks[buy.movement_id]
        assert task.attempts == 1
        assert task.next_due == h.clock.time() + 10

        h.clock.advance(5)
        await h.loop.run_cycle()
        assert len(h.transport.status_calls) == 1

        h.clock.advance(5)
        await h.loop.run_cycle()
        assert task.attempts == 2
        h.clock.advance(20)
        report = await h.loop.run_cycle()
        assert report.exhausted == 1
        assert task.exhausted
        assert len(h.transport.status_calls) == 3

        h.clock.advance(600)
        await h.loop.run_cycle()
        assert len(h.transport.status_calls) == 3
        assert (await h.store.get_movement(buy.movement_id)).status is MovementStatus.PENDING

        h.clock.advance(1800)
        await h.loop.run_cycle()
        assert len(h.transport.status_calls) == 4
        assert h.loop.tasks[buy.movement_id] is not task
        assert task.cancelled

    asyncio.run(_run())


def test_failed_buy_order_cancels_signal():
    async def _run():
        h = Harness(status_results=[order_payload(1001, 'CANCELED')])
        signal, buy = await h.open()
        report = await h.loop.run_cycle()
        assert report.failed == 1
        movement = await h.store.get_movement(buy.movement_id)
        assert movement.status is MovementStatus.FAILED
        assert movement.order_error == {'reason': 'exchange_status', 'status': 'CANCELED'}
        assert (await h.store.get_signal(signal.signal_id)).status is SignalStatus.CANCELLED

    asyncio.run(_run())


def test_poll_errors_defer_without_resolving():
    async def _run():
        h = Harness(status_results=[BinanceAPIError(503, None, None, 'unavailable')])
        _, buy = await h.open()
        report = await h.loop.run_cycle()
        assert report.deferred == 1
        assert report.polled == {}
        assert (await h.store.get_movement(buy.movement_id)).status is MovementStatus.PENDING

    asyncio.run(_run())


def test_unknown_user_is_skipped():
    async def _run():
        h = Harness(status_results=[order_payload(1001, 'FILLED', qty=0.0002, quote=20.0)])
        await h.open()
        loop = ReconciliationLoop(h.manager, lambda user_id: None, config_obj=h.cfg, clock=h.clock)
        report = await loop.run_cycle()
        assert report.filled == 0
        assert h.transport.status_calls == []

    asyncio.run(_run())


def test_unfilled_signals_expire_when_ttl_configured():
    async def _run():
        h = Harness(signal_ttl_hours=1, grace_period_s=100000)
        signal, buy = await h.open(submit=False)
        h.clock.advance(3601)
        report = await h.loop.run_cycle()
        assert report.expired == 1
        assert (await h.store.get_signal(signal.signal_id)).status is SignalStatus.EXPIRED
        assert (await h.store.get_movement(buy.movement_id)).status is MovementStatus.CANCELLED

    asyncio.run(_run())


def test_run_loop_sleeps_between_cycles_and_stops():
    async def _run():
        h = Harness()
        task = h.loop.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await h.loop.stop()
        assert task.done()
        assert h.clock.sleeps and h.clock.sleeps[0] == 15

    asyncio.run(_run())


class PerOrderTransport(FakeTransport):
    def __init__(self, replies):
        super().__init__()
        self.replies = replies

    async def get_order_status(self, symbol, order_id):
        self.status_calls.append(order_id)
        reply = self.replies[order_id]
        if isinstance(reply, Exception):
            raise reply
        return _ticket(reply)


def test_malformed_status_reply_is_deferred_without_blocking_other_orders():
    async def _run():
        transport = PerOrderTransport({
            '1001': MalformedResponseError("Malformed order status: '<html>bad gateway</html>'"),
            '1002': order_payload(1002, 'FILLED', qty=0.0002, quote=20.0),
        })
        h = Harness(transport=transport)
        _, broken = await h.open()
        _, healthy = await h.open()
        assert (broken.order_id, healthy.order_id) == ('1001', '1002')

        report = await h.loop.run_cycle()
        assert report.deferred == 1
        assert report.filled == 1
        assert (await h.store.get_movement(healthy.movement_id)).status is MovementStatus.FILLED
        task = h.loop.tasks[broken.movement_id]
        assert task.attempts == 1

        h.clock.advance(10)
        await h.loop.run_cycle()
        h.clock.advance(20)
        report = await h.loop.run_cycle()
        assert report.exhausted == 1
        assert task.exhausted
        assert transport.status_calls.count('1001') == 3
        assert (await h.store.get_movement(broken.movement_id)).status is MovementStatus.PENDING

    asyncio.run(_run())


def test_timed_out_buy_that_filled_is_found_by_client_order_id():
    async def _run():
        h = Harness(
            create_results=[asyncio.TimeoutError()],
            status_results=[order_payload(1001, 'FILLED', qty=0.0002, quote=20.04)],
        )
        signal, buy = await h.open()
        assert buy.order_id is None
        assert h.transport.create_calls[0]['client_order_id'] == buy.movement_id

        h.clock.advance(301)
        report = await h.loop.run_cycle()
        assert report.swept == 0
        assert report.recovered == 1
        assert report.filled == 1
        assert h.transport.status_calls == [buy.movement_id]

        movement = await h.store.get_movement(buy.movement_id)
        assert movement.status is MovementStatus.FILLED
        assert movement.order_id == '1001'
        assert (await h.store.get_signal(signal.signal_id)).status is SignalStatus.ACTIVE

    asyncio.run(_run())


def test_timed_out_buy_still_open_is_polled_by_order_id():
    async def _run():
        h = Harness(create_results=[asyncio.TimeoutError()], status_results=[order_payload(1001, 'NEW')])
        _, buy = await h.open()

        h.clock.advance(301)
        report = await h.loop.run_cycle()
        assert report.recovered == 1
        assert report.deferred == 1
        assert (await h.store.get_movement(buy.movement_id)).order_id == '1001'
        assert not h.loop.tasks[buy.movement_id].by_client_id

        h.clock.advance(10)
        await h.loop.run_cycle()
        assert h.transport.status_calls == [buy.movement_id, '1001']

    asyncio.run(_run())
