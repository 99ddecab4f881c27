import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from strategy.signal_types import (
    InvalidTransitionError,
    Movement,
    MovementStatus,
    Signal,
    SignalStatus,
    can_transition,
)


logger = logging.getLogger(__name__)

PendingEntry = Tuple[Signal, Movement]


class SignalStore(ABC):
    """Durable storage for signals and their movements.

    Status changes are conditional on the current status so that concurrent or
    repeated callers cannot move a record backwards or apply a transition twice.
    """

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def create_signal(self, signal: Signal) -> Signal:
        ...

    @abstractmethod
    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        ...

    @abstractmethod
    async def close_signal(self, signal_id: str, status: SignalStatus, **fields: Any) -> bool:
        """ACTIVE -> ``status`` with the given fields; False if the signal was not ACTIVE."""

    @abstractmethod
    async def create_movement(self, movement: Movement) -> Movement:
        ...

    @abstractmethod
    async def get_movement(self, movement_id: str) -> Optional[Movement]:
        ...

    @abstractmethod
    async def transition_movement(
        self,
        movement_id: str,
        from_status: MovementStatus,
        to_status: MovementStatus,
        **fields: Any,
    ) -> bool:
        """Apply ``to_status`` only if the movement is still in ``from_status``."""

    @abstractmethod
    async def update_movement(self, movement_id: str, **fields: Any) -> Optional[Movement]:
        """Update non-status fields such as order linkage."""

    @abstractmethod
    async def list_active_signals(self, user_id: Optional[str] = None) -> List[Signal]:
        ...

    @abstractmethod
    async def list_pending_movements(
        self,
        with_order_id: bool,
        older_than: Optional[float] = None,
    ) -> List[PendingEntry]:
        ...

    @abstractmethod
    async def list_signals(self, limit: int = 50, user_id: Optional[str] = None) -> List[Signal]:
        """Most recent signals first."""

    @abstractmethod
    async def statistics(self, user_id: Optional[str] = None) -> Dict[str, float]:
        ...


def summarize(signals: List[Signal]) -> Dict[str, float]:
    matched = [s for s in signals if s.status is SignalStatus.MATCHED]
    total_profit = sum(s.total_profit for s in matched)
    total_commission = sum(s.total_commission for s in matched)
    total_net = sum(s.net_profit for s in matched)
    profitable = sum(1 for s in matched if s.net_profit > 0)
    return {
        'total_signals': len(signals),
        'active_signals': sum(1 for s in signals if s.status is SignalStatus.ACTIVE),
        'matched_signals': len(matched),
        'total_profit': total_profit,
        'total_commission': total_commission,
        'total_net_profit': total_net,
        'success_rate': (profitable / len(matched) * 100) if matched else 0.0,
        'avg_profit_per_signal': (total_net / len(matched)) if matched else 0.0,
    }


class InMemorySignalStore(SignalStore):
    """Process-local store used for paper runs and tests.

    Records are copied on the way in and out so callers never share mutable state
    with the store, mirroring a database round-trip.
    """

    def __init__(self):
        self._signals: Dict[str, Signal] = {}
        self._movements: Dict[str, Movement] = {}
        self._lock = asyncio.Lock()

    def _hydrate(self, signal: Signal) -> Signal:
        result = copy.deepcopy(signal)
        result.movements = sorted(
            (copy.deepcopy(m) for m in self._movements.values() if m.signal_id == signal.signal_id),
            key=lambda m: m.created_at,
        )
        return result

    async def create_signal(self, signal: Signal) -> Signal:
        async with self._lock:
            stored = copy.deepcopy(signal)
            stored.movements = []
            self._signals[stored.signal_id] = stored
            return self._hydrate(stored)

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        signal = self._signals.get(signal_id)
        return self._hydrate(signal) if signal else None

    async def close_signal(self, signal_id: str, status: SignalStatus, **fields: Any) -> bool:
        if status is SignalStatus.ACTIVE:
            raise InvalidTransitionError("cannot close a signal into ACTIVE")
        async with self._lock:
            signal = self._signals.get(signal_id)
            if signal is None or signal.status is not SignalStatus.ACTIVE:
                return False
            for key, value in fields.items():
                setattr(signal, key, value)
            signal.status = status
            return True

    async def create_movement(self, movement: Movement) -> Movement:
        async with self._lock:
            if movement.signal_id not in self._signals:
                raise KeyError(f"unknown signal {movement.signal_id}")
            self._movements[movement.movement_id] = copy.deepcopy(movement)
            return copy.deepcopy(movement)

    async def get_movement(self, movement_id: str) -> Optional[Movement]:
        movement = self._movements.get(movement_id)
        return copy.deepcopy(movement) if movement else None

    async def transition_movement(
        self,
        movement_id: str,
        from_status: MovementStatus,
        to_status: MovementStatus,
        **fields: Any,
    ) -> bool:
        if not can_transition(from_status, to_status):
            raise InvalidTransitionError(f"{from_status.value} -> {to_status.value}")
        async with self._lock:
            movement = self._movements.get(movement_id)
            if movement is None or movement.status is not from_status:
                return False
            for key, value in fields.items():
                setattr(movement, key, value)
            movement.status = to_status
            return True

    async def update_movement(self, movement_id: str, **fields: Any) -> Optional[Movement]:
        if 'status' in fields:
            raise InvalidTransitionError("use transition_movement for status changes")
        async with self._lock:
            movement = self._movements.get(movement_id)
            if movement is None:
                return None
            for key, value in fields.items():
                setattr(movement, key, value)
            return copy.deepcopy(movement)

    async def list_active_signals(self, user_id: Optional[str] = None) -> List[Signal]:
        return [
            self._hydrate(s)
            for s in sorted(self._signals.values(), key=lambda s: s.created_at)
            if s.status is SignalStatus.ACTIVE and (user_id is None or s.user_id == user_id)
        ]

    async def list_pending_movements(
        self,
        with_order_id: bool,
        older_than: Optional[float] = None,
    ) -> List[PendingEntry]:
        entries: List[PendingEntry] = []
        for movement in sorted(self._movements.values(), key=lambda m: m.created_at):
            if movement.status is not MovementStatus.PENDING:
                continue
            if bool(movement.order_id) != with_order_id:
                continue
            if older_than is not None and movement.created_at >= older_than:
                continue
            signal = self._signals.get(movement.signal_id)
            if signal is None:
                continue
            entries.append((self._hydrate(signal), copy.deepcopy(movement)))
        return entries

    async def list_signals(self, limit: int = 50, user_id: Optional[str] = None) -> List[Signal]:
        signals = [s for s in self._signals.values() if user_id is None or s.user_id == user_id]
        signals.sort(key=lambda s: s.created_at, reverse=True)
        return [self._hydrate(s) for s in signals[:limit]]

    async def statistics(self, user_id: Optional[str] = None) -> Dict[str, float]:
        signals = [s for s in self._signals.values() if user_id is None or s.user_id == user_id]
        return summarize(signals)
