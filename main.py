import asyncio
import logging
from typing import Any, Dict, List, Optional

import uvicorn

from analytics.candles import CandleWindow
from analytics.indicators import IndicatorCalculator
from api.metrics import start_metrics_server
from api.notifications import TradeNotifier
from api.status_server import create_app
from config import config
from config.config_loader import as_bool
from config.utils import get_config_section, section_value
from ingest.kline_stream import KlineStream
from monitoring.async_utils import SystemClock, run_tasks_with_cleanup, system_clock
from monitoring.logging_utils import setup_logging
from monitoring.signal_auditor import SignalAuditor
from orchestration.orchestrator import MultiTenantOrchestrator, UserContext
from orchestration.reconciliation import ReconciliationLoop
from persistence.store import InMemorySignalStore, SignalStore
from strategy.decision_engine import DecisionEngine
from strategy.execution import ExecutionManager
from strategy.signal_manager import SignalManager
from strategy.signal_types import UserConfig
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


def build_store(config_obj: Any) -> SignalStore:
    database = get_config_section(config_obj, 'database')
    if as_bool(database.get('enabled'), False):
        from persistence.postgres import PostgresSignalStore
        return PostgresSignalStore(config_obj)
    logger.info("Database disabled; signals are kept in memory")
    return InMemorySignalStore()


class TradingSystem:
    """Wire the candle stream, decision engine, store and reconciliation into one process."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        store: Optional[SignalStore] = None,
        notifier: Optional[TradeNotifier] = None,
        clock: Optional[SystemClock] = None,
    ):
        self.config = config_obj if config_obj is not None else config
        exchange = get_config_section(self.config, 'exchange')
        strategy = get_config_section(self.config, 'strategy')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.api_cfg = get_config_section(self.config, 'api')

        self.symbol = exchange.get('symbol', 'BTCUSDT')
        self.paper_trading = as_bool(strategy.get('paper_trading'), True)
        self.max_daily_signals = section_value(strategy, 'max_daily_signals', 300, int)
        self.clock = clock or system_clock

        self.window = CandleWindow.from_config(self.symbol, get_config_section(self.config, 'window'), self.clock)
        self.calculator = IndicatorCalculator.from_config(get_config_section(self.config, 'indicators'))
        self.engine = DecisionEngine(self.config)
        self.store = store or build_store(self.config)
        self.auditor = SignalAuditor(
            self.monitoring_cfg.get('decision_audit_log'),
            enabled=as_bool(self.monitoring_cfg.get('audit_enabled'), True),
        )
        self.signal_manager = SignalManager(
            self.store,
            notifier=notifier or TradeNotifier(self.config),
            auditor=self.auditor,
            clock=self.clock,
        )
        self.orchestrator = MultiTenantOrchestrator(
            self.window,
            self.calculator,
            self.engine,
            self.signal_manager,
            auditor=self.auditor,
            clock=self.clock,
        )
        self.reconciliation = ReconciliationLoop(
            self.signal_manager,
            self.orchestrator.execution_for,
            store=self.store,
            config_obj=self.config,
            clock=self.clock,
        )
        self.stream = KlineStream(self.orchestrator.on_candle, self.symbol, self.config)
        self.running = False

        for entry in self._configured_users():
            self._register_user(UserConfig.from_dict(entry, self.max_daily_signals))

    def _configured_users(self) -> List[Dict[str, Any]]:
        users = self.config.get('users') or []
        return [dict(u) for u in users if u and u.get('user_id')]

    def build_execution(self, user: UserConfig) -> ExecutionManager:
        if self.paper_trading:
            return ExecutionManager(user.user_id, paper_mode=True, config_obj=self.config)
        if not user.has_credentials:
            logger.warning("[%s] No API credentials; trading on paper", user.user_id)
            return ExecutionManager(user.user_id, paper_mode=True, config_obj=self.config)
        transport = BinanceTransport.for_user(user.api_key, user.api_secret, user.testnet, self.config)
        return ExecutionManager(user.user_id, transport, paper_mode=False, config_obj=self.config)

    def _register_user(self, user: UserConfig) -> UserContext:
        return self.orchestrator.add_user(user, self.build_execution(user))

    async def add_user(self, user: UserConfig) -> UserContext:
        ctx = self._register_user(user)
        if self.running:
            await ctx.execution.initialize()
        return ctx

    async def remove_user(self, user_id: str) -> bool:
        ctx = self.orchestrator.remove_user(user_id)
        if ctx is None:
            return False
        await ctx.execution.close()
        return True

    async def initialize(self):
        await self.store.initialize()
        for ctx in list(self.orchestrator.users.values()):
            await ctx.execution.initialize()

    def _api_server(self) -> Optional[uvicorn.Server]:
        if not as_bool(self.api_cfg.get('enabled'), False):
            return None
        server_config = uvicorn.Config(
            create_app(self),
            host=self.api_cfg.get('host', '0.0.0.0'),
            port=int(self.api_cfg.get('port', 8000)),
            log_level='warning',
        )
        return uvicorn.Server(server_config)

    async def start(self):
        self.running = True
        await self.initialize()

        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port))

        logger.info(
            "Starting %s engine for %d user(s) (%s)",
            self.symbol,
            len(self.orchestrator.users),
            "paper" if self.paper_trading else "live",
        )
        tasks = [
            asyncio.create_task(self.stream.run()),
            self.reconciliation.start(),
        ]
        server = self._api_server()
        if server is not None:
            tasks.append(asyncio.create_task(server.serve()))

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        self.stream.stop()
        await self.reconciliation.stop()
        for ctx in list(self.orchestrator.users.values()):
            await ctx.execution.close()
        await self.store.close()
        logger.info("Engine stopped")


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    setup_logging(get_config_section(config, 'logging').get('level'))
    asyncio.run(main())
