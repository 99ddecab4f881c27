import logging
import math
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Optional

from config import config
from config.utils import get_config_section, section_value


logger = logging.getLogger(__name__)


def floor_to_step(quantity: float, step: float) -> float:
    """Floor ``quantity`` to a multiple of ``step`` without binary rounding drift."""
    if step <= 0:
        return quantity
    units = (Decimal(repr(float(quantity))) / Decimal(repr(float(step)))).to_integral_value(rounding=ROUND_FLOOR)
    return float(units * Decimal(repr(float(step))))


class RiskManager:
    def __init__(self, config_obj: Optional[Any] = None):
        source = config_obj if config_obj is not None else config
        risk = get_config_section(source, 'risk')
        strategy = get_config_section(source, 'strategy')
        exchange = get_config_section(source, 'exchange')

        self.commission = section_value(strategy, 'commission', 0.001)
        self.min_profit_margin = section_value(strategy, 'min_profit_margin', 0.005)
        self.stop_atr_mult = section_value(risk, 'stop_atr_multiplier', 1.5)
        self.take_profit_atr_mult = section_value(risk, 'take_profit_atr_multiplier', 3.0)
        self.atr_floor_fraction = section_value(risk, 'atr_floor_fraction', 0.1)
        self.quantity_step = section_value(exchange, 'quantity_step', 0.00001)
        self.min_quantity = section_value(exchange, 'min_quantity', 0.00001)

    @property
    def round_trip_cost(self) -> float:
        """Fraction of price needed to cover buy+sell commission plus the minimum margin."""
        return 2 * self.commission + self.min_profit_margin

    def passes_safety_gate(self, price: float, atr: float) -> bool:
        if not (math.isfinite(price) and math.isfinite(atr)) or price <= 0:
            return False
        min_price_movement = price * self.round_trip_cost
        if atr < min_price_movement * self.atr_floor_fraction:
            logger.debug(
                "ATR too small to cover costs: %.4f < %.4f",
                atr,
                min_price_movement * self.atr_floor_fraction,
            )
            return False
        return True

    def calculate_position_size(self, capital: float, price: float, step: Optional[float] = None) -> float:
        step = step or self.quantity_step
        if price <= 0 or capital <= 0:
            return 0.0
        return max(self.min_quantity, floor_to_step(capital / price, step))

    def calculate_stop_price(self, entry_price: float, atr: float) -> float:
        stop_pct = (self.stop_atr_mult * atr) / entry_price
        return entry_price * (1 - stop_pct)

    def calculate_target_price(self, entry_price: float, atr: float) -> float:
        target_pct = (self.take_profit_atr_mult * atr) / entry_price
        floor_pct = self.round_trip_cost
        if target_pct <= floor_pct:
            logger.debug("Take-profit %.4f%% raised to cost floor %.4f%%", target_pct * 100, floor_pct * 100)
        return entry_price * (1 + max(target_pct, floor_pct))

    def sell_quantity(self, buy_quantity: float, commission_in_base: bool, step: Optional[float] = None) -> float:
        if not commission_in_base:
            return buy_quantity
        step = step or self.quantity_step
        return max(self.min_quantity, floor_to_step(buy_quantity * (1 - self.commission), step))
