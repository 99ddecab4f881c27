import hashlib
import hmac
import sys
from urllib.parse import urlencode

sys.path.insert(0, '.')

import pytest

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient
from tests.fakes import make_config


def _client(**exchange):
    return BinanceRESTClient('key', 'secret', config_obj=make_config(exchange=exchange))


def test_base_url_follows_testnet_flag():
    assert BinanceRESTClient(config_obj=make_config()).base_url == 'https://api.binance.com'
    testnet = BinanceRESTClient(testnet=True, config_obj=make_config(exchange={'testnet_url': 'https://tn.example/'}))
    assert testnet.base_url == 'https://tn.example'


def test_signature_covers_offset_timestamp():
    client = _client(recv_window_ms=5000)
    client.time_offset_ms = -2500
    signed = client.sign({'symbol': 'BTCUSDT', 'orderId': 7})
    assert signed['recvWindow'] == 5000
    body = {k: v for k, v in signed.items() if k != 'signature'}
    expected = hmac.new(b'secret', urlencode(body).encode('utf-8'), hashlib.sha256).hexdigest()
    assert signed['signature'] == expected
    assert list(signed)[-1] == 'signature'


def test_signing_requires_credentials():
    with pytest.raises(RuntimeError):
        BinanceRESTClient(config_obj=make_config()).sign({})


def test_error_body_becomes_api_error():
    with pytest.raises(BinanceAPIError) as info:
        BinanceRESTClient._decode(400, 'application/json', '{"code": -1021, "msg": "Timestamp outside recvWindow"}')
    assert info.value.is_clock_skew
    assert info.value.msg == 'Timestamp outside recvWindow'

    with pytest.raises(BinanceAPIError) as info:
        BinanceRESTClient._decode(502, 'text/html', '<html>bad gateway</html>')
    assert info.value.code is None
    assert info.value.is_transient


def test_success_body_is_decoded():
    assert BinanceRESTClient._decode(200, 'application/json;charset=UTF-8', '{"serverTime": 1}') == {'serverTime': 1}
    assert BinanceRESTClient._decode(200, 'text/plain', 'ok') == 'ok'
