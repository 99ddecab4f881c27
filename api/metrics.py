import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _monitoring_value(key: str, default=None):
    section = config.get('monitoring') or {}
    return section.get(key, default)


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_value('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_value('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.candles_processed = Counter('candles_processed_total', 'Closed candles accepted into the window')
        self.candles_dropped = Counter('candles_dropped_total', 'Candles rejected before evaluation', ['reason'])
        self.current_price = Gauge('current_price', 'Last closed candle price')
        self.rsi_value = Gauge('rsi_current', 'Current RSI value')
        self.atr_value = Gauge('atr_current', 'Current ATR value')
        self.tick_latency = Histogram('tick_processing_seconds', 'Time to evaluate one candle across all users')

        self.entry_evaluations = Counter('entry_evaluations_total', 'Entry evaluations by outcome', ['outcome'])
        self.signals_opened = Counter('signals_opened_total', 'Signals created on qualifying entries')
        self.signals_closed = Counter('signals_closed_total', 'Signals moved to a terminal status', ['status'])
        self.active_signals = Gauge('active_signals', 'Active signals per user', ['user'])
        self.movements_created = Counter('movements_created_total', 'Movements created', ['type'])
        self.movements_resolved = Counter('movements_resolved_total', 'Movement terminal transitions', ['type', 'status'])
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized net PnL of matched signals')

        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to return/ACK')
        self.order_errors = Counter('order_errors_total', 'Exchange call failures', ['kind'])
        self.clock_resyncs = Counter('clock_resyncs_total', 'Exchange clock offset resynchronizations')
        self.reconciliation_polls = Counter('reconciliation_polls_total', 'Order status polls', ['result'])
        self.reconciliation_exhausted = Counter('reconciliation_exhausted_total', 'Polls abandoned at the attempt ceiling')
        self.swept_movements = Counter('swept_movements_total', 'Unsubmitted movements marked failed')
        self.pending_polls = Gauge('pending_polls', 'Movements currently tracked by reconciliation')

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.notifications_failed = Counter('notifications_failed_total', 'Trade reports that could not be delivered')

    def record_candle(self, price: float):
        self.candles_processed.inc()
        self.current_price.set(price)

    def record_drop(self, reason: str):
        self.candles_dropped.labels(reason=reason).inc()

    def update_indicators(self, rsi: Optional[float], atr: Optional[float]):
        if rsi is not None:
            self.rsi_value.set(rsi)
        if atr is not None:
            self.atr_value.set(atr)

    def record_tick_latency(self, seconds: float):
        self.tick_latency.observe(seconds)

    def record_entry_evaluation(self, outcome: str):
        self.entry_evaluations.labels(outcome=outcome).inc()

    def record_signal_opened(self):
        self.signals_opened.inc()

    def record_signal_closed(self, status: str):
        self.signals_closed.labels(status=status).inc()

    def update_active_signals(self, user_id: str, count: int):
        self.active_signals.labels(user=user_id).set(count)

    def record_movement_created(self, movement_type: str):
        self.movements_created.labels(type=movement_type).inc()

    def record_movement_resolved(self, movement_type: str, status: str):
        self.movements_resolved.labels(type=movement_type, status=status).inc()

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_order_error(self, kind: str):
        self.order_errors.labels(kind=kind).inc()

    def record_clock_resync(self):
        self.clock_resyncs.inc()

    def record_poll(self, result: str):
        self.reconciliation_polls.labels(result=result).inc()

    def record_poll_exhausted(self):
        self.reconciliation_exhausted.inc()

    def record_swept(self, count: int = 1):
        self.swept_movements.inc(count)

    def update_pending_polls(self, count: int):
        self.pending_polls.set(count)

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_notification_failure(self):
        self.notifications_failed.inc()


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
