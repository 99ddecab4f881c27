import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from analytics.indicators import IndicatorSnapshot
from config import config
from config.config_loader import as_bool
from config.utils import get_config_section, section_value
from risk.position_sizer import RiskManager
from strategy.selling_strategies import SellContext, SellingPolicy
from strategy.signal_types import Signal, UserConfig


logger = logging.getLogger(__name__)


@dataclass
class EntryEvaluation:
    conditions: Dict[str, bool]
    required: int
    volume_confirmed: bool = True
    reason: Optional[str] = None

    @property
    def passed(self) -> int:
        return sum(1 for ok in self.conditions.values() if ok)

    @property
    def qualifies(self) -> bool:
        return self.passed >= self.required and self.volume_confirmed


@dataclass
class EntryPlan:
    symbol: str
    price: float
    quantity: float
    stop_loss: float
    take_profit: float
    total_amount: float
    commission: float
    net_amount: float
    snapshot: IndicatorSnapshot
    evaluation: EntryEvaluation


@dataclass
class ExitPlan:
    price: float
    quantity: float
    strategy: str
    min_sell_price: float
    buy_price: float
    total_amount: float
    commission: float
    net_amount: float
    details: Dict[str, Any] = field(default_factory=dict)


class DecisionEngine:
    """Turns one indicator snapshot into entry and exit plans for a user."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        risk_manager: Optional[RiskManager] = None,
        policy: Optional[SellingPolicy] = None,
    ):
        source = config_obj if config_obj is not None else config
        strategy = get_config_section(source, 'strategy')
        self.symbol = get_config_section(source, 'exchange').get('symbol', 'BTCUSDT')
        self.risk = risk_manager or RiskManager(source)
        self.policy = policy or SellingPolicy(get_config_section(source, 'selling'))
        self.commission = section_value(strategy, 'commission', 0.001)
        self.min_conditions = section_value(strategy, 'min_conditions', 5, int)
        self.min_candles = section_value(strategy, 'min_candles', 50, int)
        self.rsi_low = section_value(strategy, 'rsi_entry_low', 25.0)
        self.rsi_high = section_value(strategy, 'rsi_entry_high', 65.0)
        self.bb_proximity = section_value(strategy, 'bb_proximity', 1.005)
        self.long_sma_tolerance = section_value(strategy, 'long_sma_tolerance', 0.995)
        self.use_volume_confirmation = as_bool(strategy.get('use_volume_confirmation'), False)
        self.volume_ratio = section_value(strategy, 'volume_confirmation_ratio', 1.2)
        self.commission_in_base = as_bool(strategy.get('commission_in_base_asset'), False)

    def evaluate_entry_conditions(self, snap: IndicatorSnapshot) -> EntryEvaluation:
        macd_above = snap.macd.macd > snap.macd.signal
        conditions = {
            'trend': snap.strong_uptrend or (snap.range_market and macd_above),
            'rsi': self.rsi_low <= snap.rsi <= self.rsi_high,
            'momentum': macd_above or snap.macd.histogram_last > 0,
            'candle': snap.bullish_engulfing or snap.close > snap.open,
            'pullback': snap.close <= snap.bollinger.lower * self.bb_proximity or snap.close < snap.sma_short,
            'support': snap.close > snap.sma_long * self.long_sma_tolerance,
        }
        volume_confirmed = True
        if self.use_volume_confirmation:
            volume_confirmed = snap.current_volume > snap.volume_ma * self.volume_ratio
        evaluation = EntryEvaluation(conditions, self.min_conditions, volume_confirmed)
        if evaluation.passed < self.min_conditions:
            evaluation.reason = 'conditions'
        elif not volume_confirmed:
            evaluation.reason = 'volume'
        return evaluation

    def plan_entry(self, user: UserConfig, snap: IndicatorSnapshot) -> Optional[EntryPlan]:
        evaluation = self.evaluate_entry_conditions(snap)
        return self.plan_from_evaluation(user, snap, evaluation)

    def plan_from_evaluation(
        self,
        user: UserConfig,
        snap: IndicatorSnapshot,
        evaluation: EntryEvaluation,
    ) -> Optional[EntryPlan]:
        if not evaluation.qualifies:
            return None
        price = snap.close
        if not self.risk.passes_safety_gate(price, snap.atr):
            evaluation.reason = 'safety_gate'
            return None

        quantity = self.risk.calculate_position_size(user.capital_per_trade, price)
        if quantity <= 0:
            evaluation.reason = 'size'
            return None
        total = price * quantity
        commission = total * self.commission
        plan = EntryPlan(
            symbol=self.symbol,
            price=price,
            quantity=quantity,
            stop_loss=self.risk.calculate_stop_price(price, snap.atr),
            take_profit=self.risk.calculate_target_price(price, snap.atr),
            total_amount=total,
            commission=commission,
            net_amount=total + commission,
            snapshot=snap,
            evaluation=evaluation,
        )
        logger.info(
            "[%s] Entry qualified at %.2f (%d/%d conditions) qty=%.5f SL=%.2f TP=%.2f",
            user.user_id,
            price,
            evaluation.passed,
            len(evaluation.conditions),
            quantity,
            plan.stop_loss,
            plan.take_profit,
        )
        return plan

    def plan_exit(self, signal: Signal, user: UserConfig, snap: IndicatorSnapshot) -> Optional[ExitPlan]:
        if not signal.ready_to_sell:
            return None
        buys = signal.filled_buys
        buy_qty = sum(m.quantity for m in buys)
        if buy_qty <= 0:
            return None
        buy_price = sum(m.total_amount for m in buys) / buy_qty
        price = snap.close

        ctx = SellContext(
            buy_price=buy_price,
            current_price=price,
            commission=self.commission,
            user=user,
            snapshot=snap,
        )
        strategy = self.policy.select(ctx)
        min_price = strategy.min_sell_price(ctx)
        if price < min_price:
            logger.debug(
                "[%s] Holding %s: %.2f below %s minimum %.2f",
                user.user_id,
                signal.signal_id,
                price,
                strategy.name,
                min_price,
            )
            return None

        quantity = self.risk.sell_quantity(buy_qty, self.commission_in_base)
        total = price * quantity
        commission = total * self.commission
        logger.info(
            "[%s] Exit for %s via %s at %.2f (min %.2f, bought %.2f)",
            user.user_id,
            signal.signal_id,
            strategy.name,
            price,
            min_price,
            buy_price,
        )
        return ExitPlan(
            price=price,
            quantity=quantity,
            strategy=strategy.name,
            min_sell_price=min_price,
            buy_price=buy_price,
            total_amount=total,
            commission=commission,
            net_amount=total - commission,
            details={'profit_pct': ctx.profit_pct * 100},
        )
