import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import aiohttp

from api.metrics import metrics
from config import config
from config.config_loader import is_unresolved
from config.utils import get_config_section


logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    total_minutes = max(0, int(seconds // 60))
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


@dataclass
class TradeReport:
    signal_id: str
    user_id: str
    symbol: str
    buy_price: float
    sell_price: float
    quantity: float
    total_buy_amount: float
    total_sell_amount: float
    gross_profit: float
    total_commission: float
    net_profit: float
    profit_percent: float
    roi: float
    duration: str
    paper_trading: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        mode = "PAPER" if self.paper_trading else "LIVE"
        return (
            f"[{mode}] {self.symbol} signal {self.signal_id} closed: "
            f"buy {self.buy_price:.2f} sell {self.sell_price:.2f} qty {self.quantity:.5f} "
            f"net {self.net_profit:+.4f} ({self.profit_percent:+.2f}%, ROI {self.roi:+.2f}%) in {self.duration}"
        )


class TradeNotifier:
    """Delivers one trade report per closed signal. Delivery is best-effort."""

    def __init__(self, config_obj: Optional[Any] = None):
        section = get_config_section(config_obj or config, 'notifications')
        url = section.get('webhook_url')
        if is_unresolved(url):
            self.webhook_url = None
            self.enabled = False
        else:
            self.webhook_url = str(url)
            self.enabled = True
        self.timeout_s = float(section.get('timeout_s', 5))

    async def send_trade_report(self, report: TradeReport) -> bool:
        if not self.enabled:
            logger.info("[Report] %s", report.summary())
            return False

        payload = {'type': 'trade_report', 'report': report.to_dict(), 'text': report.summary()}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Report] Webhook failed with status %s for signal %s",
                            response.status,
                            report.signal_id,
                        )
                        metrics.record_notification_failure()
                        return False
        except Exception as e:
            logger.error("[Report] Webhook error for signal %s: %s", report.signal_id, e)
            metrics.record_notification_failure()
            return False
        return True


trade_notifier = TradeNotifier()
