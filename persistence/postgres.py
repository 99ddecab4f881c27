import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import asyncpg

from config import config
from config.utils import get_config_section
from persistence.store import PendingEntry, SignalStore, summarize
from strategy.signal_types import (
    InvalidTransitionError,
    Movement,
    MovementStatus,
    Signal,
    SignalStatus,
    can_transition,
)


logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / 'schema.sql'

SIGNAL_COLUMNS = (
    'id', 'user_id', 'symbol', 'status', 'initial_price', 'stop_loss', 'take_profit',
    'atr', 'rsi', 'macd', 'sma_short', 'sma_long', 'volume', 'final_price',
    'total_profit', 'total_commission', 'net_profit', 'paper_trading', 'created_at', 'closed_at',
)
MOVEMENT_COLUMNS = (
    'id', 'signal_id', 'type', 'status', 'price', 'quantity', 'total_amount', 'commission',
    'net_amount', 'order_id', 'client_order_id', 'order_response', 'order_error',
    'created_at', 'executed_at',
)
NUMERIC_COLUMNS = {
    'initial_price', 'stop_loss', 'take_profit', 'atr', 'rsi', 'macd', 'sma_short',
    'sma_long', 'volume', 'final_price', 'total_profit', 'total_commission', 'net_profit',
    'price', 'quantity', 'total_amount', 'commission', 'net_amount',
}
TIMESTAMP_COLUMNS = {'created_at', 'closed_at', 'executed_at'}
JSON_COLUMNS = {'order_response', 'order_error'}


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in NUMERIC_COLUMNS:
        return Decimal(repr(float(value)))
    if column in TIMESTAMP_COLUMNS:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if column in JSON_COLUMNS:
        return json.dumps(value, default=str)
    if column in ('status', 'type') and hasattr(value, 'value'):
        return value.value
    return value


def _decode_row(row: asyncpg.Record) -> Dict[str, Any]:
    data = dict(row)
    for column in JSON_COLUMNS:
        raw = data.get(column)
        if isinstance(raw, str):
            try:
                data[column] = json.loads(raw)
            except ValueError:
                data[column] = {'raw': raw}
    return data


class PostgresSignalStore(SignalStore):
    """asyncpg-backed store; decimals are normalized to floats once in ``from_record``."""

    def __init__(self, config_obj: Optional[Any] = None):
        self.db_cfg = get_config_section(config_obj or config, 'database')
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        db = self.db_cfg
        self.pool = await asyncpg.create_pool(
            host=db.get('host'),
            port=int(db.get('port', 5432)),
            database=db.get('database'),
            user=db.get('user'),
            password=db.get('password'),
            min_size=int(db.get('min_pool', 1)),
            max_size=int(db.get('max_pool', 10)),
        )
        await self.ensure_schema()
        logger.info("Postgres signal store ready (%s/%s)", db.get('host'), db.get('database'))

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_PATH.read_text())

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _insert(self, table: str, columns: Sequence[str], values: Dict[str, Any]) -> None:
        placeholders = ', '.join(f'${i}' for i in range(1, len(columns) + 1))
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        args = [_encode(col, values.get(col)) for col in columns]
        async with self.pool.acquire() as conn:
            await conn.execute(sql, *args)

    @staticmethod
    def _assignments(fields: Dict[str, Any], allowed: Iterable[str], start: int) -> Tuple[str, List[Any]]:
        allowed_set = set(allowed)
        parts: List[str] = []
        args: List[Any] = []
        for key, value in fields.items():
            if key not in allowed_set or key == "id":
                raise ValueError(f"unknown or immutable column: {key}")
            args.append(_encode(key, value))
            parts.append(f"{key} = ${start + len(args) - 1}")
        return ', '.join(parts), args

    async def create_signal(self, signal: Signal) -> Signal:
        row = signal.to_dict(include_movements=False)
        await self._insert('signals', SIGNAL_COLUMNS, row)
        return await self.get_signal(signal.signal_id)

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM signals WHERE id = $1', signal_id)
            if row is None:
                return None
            movements = await conn.fetch(
                'SELECT * FROM movements WHERE signal_id = $1 ORDER BY created_at', signal_id
            )
        return Signal.from_record(_decode_row(row), [_decode_row(m) for m in movements])

    async def close_signal(self, signal_id: str, status: SignalStatus, **fields: Any) -> bool:
        if status is SignalStatus.ACTIVE:
            raise InvalidTransitionError("cannot close a signal into ACTIVE")
        assignments, args = self._assignments(fields, SIGNAL_COLUMNS, start=4)
        sql = "UPDATE signals SET status = $3"
        if assignments:
            sql += f", {assignments}"
        sql += " WHERE id = $1 AND status = $2"
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                sql, signal_id, SignalStatus.ACTIVE.value, status.value, *args
            )
        return result.endswith(' 1')

    async def create_movement(self, movement: Movement) -> Movement:
        await self._insert('movements', MOVEMENT_COLUMNS, movement.to_dict())
        return await self.get_movement(movement.movement_id)

    async def get_movement(self, movement_id: str) -> Optional[Movement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM movements WHERE id = $1', movement_id)
        return Movement.from_record(_decode_row(row)) if row else None

    async def transition_movement(
        self,
        movement_id: str,
        from_status: MovementStatus,
        to_status: MovementStatus,
        **fields: Any,
    ) -> bool:
        if not can_transition(from_status, to_status):
            raise InvalidTransitionError(f"{from_status.value} -> {to_status.value}")
        assignments, args = self._assignments(fields, MOVEMENT_COLUMNS, start=4)
        sql = "UPDATE movements SET status = $3"
        if assignments:
            sql += f", {assignments}"
        sql += " WHERE id = $1 AND status = $2"
        async with self.pool.acquire() as conn:
            result = await conn.execute(sql, movement_id, from_status.value, to_status.value, *args)
        return result.endswith(' 1')

    async def update_movement(self, movement_id: str, **fields: Any) -> Optional[Movement]:
        if 'status' in fields:
            raise InvalidTransitionError("use transition_movement for status changes")
        if fields:
            assignments, args = self._assignments(fields, MOVEMENT_COLUMNS, start=2)
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"UPDATE movements SET {assignments} WHERE id = $1", movement_id, *args
                )
        return await self.get_movement(movement_id)

    async def _with_movements(self, conn: asyncpg.Connection, rows: List[asyncpg.Record]) -> List[Signal]:
        if not rows:
            return []
        ids = [row['id'] for row in rows]
        movement_rows = await conn.fetch(
            'SELECT * FROM movements WHERE signal_id = ANY($1::uuid[]) ORDER BY created_at', ids
        )
        grouped: Dict[Any, List[Dict[str, Any]]] = {}
        for m in movement_rows:
            grouped.setdefault(m['signal_id'], []).append(_decode_row(m))
        return [Signal.from_record(_decode_row(row), grouped.get(row['id'], [])) for row in rows]

    async def list_active_signals(self, user_id: Optional[str] = None) -> List[Signal]:
        sql = "SELECT * FROM signals WHERE status = 'active'"
        args: List[Any] = []
        if user_id is not None:
            sql += " AND user_id = $1"
            args.append(user_id)
        sql += " ORDER BY created_at"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
            return await self._with_movements(conn, rows)

    async def list_pending_movements(
        self,
        with_order_id: bool,
        older_than: Optional[float] = None,
    ) -> List[PendingEntry]:
        sql = "SELECT * FROM movements WHERE status = 'pending' AND order_id IS "
        sql += "NOT NULL" if with_order_id else "NULL"
        args: List[Any] = []
        if older_than is not None:
            sql += " AND created_at < $1"
            args.append(_encode('created_at', older_than))
        sql += " ORDER BY created_at"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        entries: List[PendingEntry] = []
        signals: Dict[str, Optional[Signal]] = {}
        for row in rows:
            movement = Movement.from_record(_decode_row(row))
            if movement.signal_id not in signals:
                signals[movement.signal_id] = await self.get_signal(movement.signal_id)
            signal = signals[movement.signal_id]
            if signal is not None:
                entries.append((signal, movement))
        return entries

    async def list_signals(self, limit: int = 50, user_id: Optional[str] = None) -> List[Signal]:
        args: List[Any] = [int(limit)]
        sql = "SELECT * FROM signals"
        if user_id is not None:
            sql += " WHERE user_id = $2"
            args.append(user_id)
        sql += " ORDER BY created_at DESC LIMIT $1"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
            return await self._with_movements(conn, rows)

    async def statistics(self, user_id: Optional[str] = None) -> Dict[str, float]:
        sql = "SELECT * FROM signals"
        args: List[Any] = []
        if user_id is not None:
            sql += " WHERE user_id = $1"
            args.append(user_id)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return summarize([Signal.from_record(_decode_row(row)) for row in rows])
