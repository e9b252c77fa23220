import httpx
import pytest
import respx
from py_clob_client.exceptions import PolyApiException

from polycopy.exceptions import (
    FundsError,
    RateLimitError,
    TransientNetworkError,
    UnknownOrderError,
)
from polycopy.execution.polymarket_client import PolymarketExchangeClient, _translate


def _api_error(status, message):
    exc = PolyApiException(error_msg=message)
    exc.status_code = status
    return exc


def test_translate_http_429_is_rate_limit():
    assert isinstance(_translate(_api_error(429, "slow down")), RateLimitError)


def test_translate_api_error_by_message():
    err = _translate(_api_error(400, "not enough balance / allowance"))
    assert isinstance(err, FundsError)
    assert "allowance" in str(err)


def test_translate_request_without_response_is_network():
    assert isinstance(_translate(_api_error(None, "Request exception!")), TransientNetworkError)


def test_translate_plain_exceptions():
    assert isinstance(_translate(ConnectionError("reset")), TransientNetworkError)
    assert isinstance(_translate(RuntimeError("weird")), UnknownOrderError)


RPC = "https://rpc.test"


def _balance_client():
    client = PolymarketExchangeClient.__new__(PolymarketExchangeClient)
    client._funder = "0x" + "ab" * 20
    client._rpc_url = RPC
    return client


@respx.mock
def test_balance_reads_usdc_with_six_decimals():
    respx.post(RPC).mock(return_value=httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                                                 "result": hex(12_345_678)}))
    assert _balance_client()._get_balance_sync() == 12.345678


@respx.mock
def test_balance_outage_raises_instead_of_reading_zero():
    respx.post(RPC).mock(side_effect=httpx.ConnectError("rpc unreachable"))
    with pytest.raises(TransientNetworkError):
        _balance_client()._get_balance_sync()


@respx.mock
def test_balance_rpc_error_payload_raises():
    respx.post(RPC).mock(return_value=httpx.Response(
        200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "header not found"}},
    ))
    with pytest.raises(TransientNetworkError):
        _balance_client()._get_balance_sync()
