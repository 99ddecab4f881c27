import asyncio
import sys
from datetime import timezone
from decimal import Decimal

sys.path.insert(0, '.')

import pytest

from api.notifications import TradeNotifier, TradeReport, format_duration
from persistence.postgres import PostgresSignalStore, _decode_row, _encode
from strategy.signal_types import MovementStatus
from tests.fakes import make_config


def _report(**overrides):
    values = dict(
        signal_id='sig-1', user_id='u1', symbol='BTCUSDT', buy_price=100000.0, sell_price=101000.0,
        quantity=0.0002, total_buy_amount=20.0, total_sell_amount=20.2, gross_profit=0.2,
        total_commission=0.0402, net_profit=0.1598, profit_percent=1.0, roi=0.799, duration='1h 5m',
        paper_trading=True,
    )
    values.update(overrides)
    return TradeReport(**values)


@pytest.mark.parametrize('seconds, expected', [(0, '0m'), (59, '0m'), (300, '5m'), (3900, '1h 5m'), (-5, '0m')])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_report_summary_mentions_mode_and_profit():
    text = _report().summary()
    assert text.startswith('[PAPER] BTCUSDT')
    assert 'net +0.1598' in text
    assert 'ROI +0.80%' in text
    assert _report(paper_trading=False).summary().startswith('[LIVE]')


def test_notifier_without_webhook_only_logs():
    notifier = TradeNotifier(make_config(notifications={'webhook_url': '${TRADE_WEBHOOK_URL}'}))
    assert not notifier.enabled
    assert asyncio.run(notifier.send_trade_report(_report())) is False


def test_column_encoding_for_postgres():
    assert _encode('price', 105000.5) == Decimal('105000.5')
    assert _encode('status', MovementStatus.FILLED) == 'filled'
    assert _encode('order_error', {'reason': 'rejected'}) == '{"reason": "rejected"}'
    stamp = _encode('created_at', 1_700_000_000.0)
    assert stamp.tzinfo is timezone.utc
    assert _encode('closed_at', None) is None


def test_json_columns_decoded_from_rows():
    row = _decode_row({'id': 'm1', 'order_response': '{"orderId": 1}', 'order_error': 'oops'})
    assert row['order_response'] == {'orderId': 1}
    assert row['order_error'] == {'raw': 'oops'}


def test_update_assignments_reject_unknown_columns():
    sql, args = PostgresSignalStore._assignments({'order_id': '42', 'price': 1.5}, ('order_id', 'price'), 2)
    assert sql == 'order_id = $2, price = $3'
    assert args == ['42', Decimal('1.5')]
    with pytest.raises(ValueError):
        PostgresSignalStore._assignments({'id': 'x'}, ('id',), 1)
    with pytest.raises(ValueError):
        PostgresSignalStore._assignments({'bogus': 1}, ('order_id',), 1)
