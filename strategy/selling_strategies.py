from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from config.config_loader import as_bool
from config.utils import section_value

if TYPE_CHECKING:
    from analytics.indicators import IndicatorSnapshot
    from strategy.signal_types import UserConfig


@dataclass(frozen=True)
class SellContext:
    buy_price: float
    current_price: float
    commission: float
    user: UserConfig
    snapshot: IndicatorSnapshot

    @property
    def profit_pct(self) -> float:
        return (self.current_price - self.buy_price) / self.buy_price


class SellingStrategy(ABC):
    name = 'base'

    def __init__(self, policy: SellingPolicy):
        self.policy = policy

    @abstractmethod
    def margin(self, ctx: SellContext) -> float:
        """Profit margin on top of round-trip commission this strategy insists on."""

    def min_sell_price(self, ctx: SellContext) -> float:
        return ctx.buy_price * (1 + 2 * ctx.commission + self.margin(ctx))

    def should_sell(self, ctx: SellContext) -> bool:
        return ctx.current_price >= self.min_sell_price(ctx)


class ImmediateStrategy(SellingStrategy):
    name = 'immediate'

    def margin(self, ctx: SellContext) -> float:
        return ctx.user.sell_margin


class HoldTrendStrategy(SellingStrategy):
    name = 'hold_trend'

    def margin(self, ctx: SellContext) -> float:
        return self.policy.hold_target_margin


class WaitForProfitStrategy(SellingStrategy):
    name = 'wait_for_profit'

    def margin(self, ctx: SellContext) -> float:
        return ctx.user.profit_margin


class SellingPolicy:
    """Chooses how patient to be with an open position.

    With ``prefer_immediate`` (the default) any profit above the user's sell margin
    is taken at once; otherwise a strong, calm uptrend is held for a larger target.
    """

    def __init__(self, section: Optional[Dict[str, Any]] = None):
        section = section or {}
        self.prefer_immediate = as_bool(section.get('prefer_immediate'), True)
        self.hold_rsi_low = section_value(section, 'hold_rsi_low', 45.0)
        self.hold_rsi_high = section_value(section, 'hold_rsi_high', 65.0)
        self.hold_max_volatility = section_value(section, 'hold_max_volatility', 0.01)
        self.hold_target_margin = section_value(section, 'hold_target_margin', 0.01)
        self.strategies = {
            cls.name: cls(self)
            for cls in (ImmediateStrategy, HoldTrendStrategy, WaitForProfitStrategy)
        }

    def immediate_threshold(self, ctx: SellContext) -> float:
        return 2 * ctx.commission + ctx.user.sell_margin

    def trend_worth_holding(self, snapshot: IndicatorSnapshot) -> bool:
        return (
            snapshot.strong_uptrend
            and snapshot.macd.histogram_last > 0
            and self.hold_rsi_low <= snapshot.rsi <= self.hold_rsi_high
            and snapshot.volatility <= self.hold_max_volatility
        )

    def select(self, ctx: SellContext) -> SellingStrategy:
        in_profit = ctx.profit_pct >= self.immediate_threshold(ctx)
        if self.prefer_immediate and in_profit:
            return self.strategies['immediate']
        if self.trend_worth_holding(ctx.snapshot):
            return self.strategies['hold_trend']
        if in_profit:
            return self.strategies['immediate']
        return self.strategies['wait_for_profit']
