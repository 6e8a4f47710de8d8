import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from src.exchange_client import (
    EnvironmentSecretStore,
    ExchangeClient,
    FileSecretStore,
    PURCHASE_PATH,
)


def make_response(status_code: int = 200, body=None, reason: str = "OK"):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.reason = reason
    response.text = json.dumps(body) if body is not None else ""
    response.json.return_value = body
    return response


@pytest.fixture
def client():
    client = ExchangeClient(
        api_key="key-1", api_secret="secret-1", base_url="https://exchange.test/"
    )
    client.session = MagicMock()
    client._get_timestamp = lambda: "1709294400000"
    return client


def test_successful_purchase(client):
    client.session.request.return_value = make_response(
        body={
            "transactionId": "ex-42",
            "status": "FILLED",
            "bitcoinAmount": "0.00153846",
            "exchangeRate": "65000",
            "fees": "1.00",
        }
    )

    result = client.purchase("user-1", Decimal("100"), "bank-1", "exec-1")

    assert result.success is True
    assert result.exchange_transaction_id == "ex-42"
    assert result.bitcoin_amount == Decimal("0.00153846")
    assert result.exchange_rate == Decimal("65000")
    assert result.fees == Decimal("1.00")


def test_request_is_signed_over_timestamp_method_path_and_body(client):
    client.session.request.return_value = make_response(
        body={"transactionId": "t", "bitcoinAmount": "1", "exchangeRate": "1"}
    )

    client.purchase("user-1", Decimal("100"), "bank-1", "exec-1")

    method, url = client.session.request.call_args.args
    kwargs = client.session.request.call_args.kwargs
    body = kwargs["data"].decode("utf-8")
    headers = kwargs["headers"]

    assert method == "POST"
    assert url == f"https://exchange.test{PURCHASE_PATH}"
    assert headers["X-API-Key"] == "key-1"
    assert headers["X-API-Timestamp"] == "1709294400000"

    expected = hmac.new(
        b"secret-1",
        f"1709294400000POST{PURCHASE_PATH}{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    assert headers["X-API-Signature"] == expected

    sent = json.loads(body)
    assert sent["clientRequestId"] == "exec-1"
    assert sent["amount"] == "100"
    assert sent["sourceOfFunds"] == "bank-1"


def test_http_error_becomes_failed_result_with_transport_details(client):
    client.session.request.return_value = make_response(
        status_code=402, body={"message": "Insufficient funds"}, reason="Payment Required"
    )

    result = client.purchase("user-1", Decimal("100"), "bank-1", "exec-1")

    assert result.success is False
    assert "Insufficient funds" in result.error_message
    assert result.error_details["requestId"] == "exec-1"
    assert result.error_details["statusCode"] == 402
    assert result.error_details["statusText"] == "Payment Required"
    assert result.error_details["responseData"] == {"message": "Insufficient funds"}
    assert "timestamp" in result.error_details


def test_network_error_becomes_failed_result(client):
    client.session.request.side_effect = requests.ConnectionError("connection refused")

    result = client.purchase("user-1", Decimal("100"), "bank-1", "exec-1")

    assert result.success is False
    assert "Network error" in result.error_message
    assert "statusCode" not in result.error_details
    assert result.error_details["requestId"] == "exec-1"


def test_rejected_order_status_is_a_failure(client):
    client.session.request.return_value = make_response(
        body={"status": "REJECTED", "message": "Market closed"}
    )

    result = client.purchase("user-1", Decimal("100"), "bank-1", "exec-1")

    assert result.success is False
    assert result.error_message == "Market closed"


def test_malformed_response_is_a_failure(client):
    client.session.request.return_value = make_response(body={"transactionId": "t"})

    result = client.purchase("user-1", Decimal("100"), "bank-1", "exec-1")

    assert result.success is False
    assert "bitcoinAmount" in result.error_message


def test_sandbox_appends_path():
    client = ExchangeClient("k", "s", "https://exchange.test", use_sandbox=True)
    assert client.base_url == "https://exchange.test/sandbox"


def test_from_secrets_reads_credentials():
    secret = json.dumps(
        {"apiKey": "k", "apiSecret": "s", "baseUrl": "https://exchange.test", "timeout": 3}
    )
    store = EnvironmentSecretStore({"exchange-creds": secret})

    client = ExchangeClient.from_secrets(store, "exchange-creds", "prod")

    assert client.api_key == "k"
    assert client.base_url == "https://exchange.test"
    assert client.timeout == 3.0


def test_from_secrets_uses_sandbox_outside_prod():
    secret = json.dumps({"apiKey": "k", "apiSecret": "s", "baseUrl": "https://exchange.test"})
    store = EnvironmentSecretStore({"exchange-creds": secret})

    client = ExchangeClient.from_secrets(store, "exchange-creds", "staging")

    assert client.base_url == "https://exchange.test/sandbox"


def test_from_secrets_falls_back_to_demo_outside_prod():
    client = ExchangeClient.from_secrets(EnvironmentSecretStore({}), "missing", "dev")

    assert client.api_key == "demo-key"
    assert client.base_url == "https://api.example.com/exchange/sandbox"


def test_from_secrets_propagates_in_prod():
    with pytest.raises(KeyError):
        ExchangeClient.from_secrets(EnvironmentSecretStore({}), "missing", "prod")


def test_file_secret_store(tmp_path):
    (tmp_path / "exchange-creds").write_text('{"apiKey": "k"}\n')
    store = FileSecretStore(tmp_path)

    assert json.loads(store.get_secret_value("exchange-creds")) == {"apiKey": "k"}

    with pytest.raises(FileNotFoundError):
        store.get_secret_value("missing")
