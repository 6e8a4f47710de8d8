"""Bitcoin exchange API client with HMAC SHA256 request signing."""

import hashlib
import hmac
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import requests

from src.domain.models import PurchaseResult

PURCHASE_PATH = "/v1/purchases"
SUCCESS_STATUSES = ("FILLED", "COMPLETED")

DEMO_CREDENTIALS = {
    "apiKey": "demo-key",
    "apiSecret": "demo-secret",
    "baseUrl": "https://api.example.com/exchange",
}


class ExchangeAPIError(Exception):
    """Raised when the exchange API returns an error or cannot be reached."""

    def __init__(
        self,
        msg: str,
        status_code: int | None = None,
        status_text: str | None = None,
        response_data: Any = None,
    ):
        self.msg = msg
        self.status_code = status_code
        self.status_text = status_text
        self.response_data = response_data
        super().__init__(msg)


class SecretStore(ABC):
    """Source of deployment secrets."""

    @abstractmethod
    def get_secret_value(self, secret_id: str) -> str:
        """Return the raw secret string. Raises if the secret is missing."""
        ...


class EnvironmentSecretStore(SecretStore):
    """Secrets kept as JSON strings in environment variables named by secret id."""

    def __init__(self, environ: dict[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def get_secret_value(self, secret_id: str) -> str:
        value = self._environ.get(secret_id)
        if not value:
            raise KeyError(f"Secret {secret_id} is not set")
        return value


class FileSecretStore(SecretStore):
    """Secrets mounted as one file per secret id (e.g. /run/secrets/<id>)."""

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)

    def get_secret_value(self, secret_id: str) -> str:
        value = (self._directory / secret_id).read_text(encoding="utf-8").strip()
        if not value:
            raise ValueError(f"Secret {secret_id} is empty")
        return value


class ExchangeClient:
    """Client for the exchange purchase API with signed request support."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        timeout: float = 5,
        use_sandbox: bool = False,
        logger: logging.Logger | None = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        base_url = base_url.rstrip("/")
        self.base_url = f"{base_url}/sandbox" if use_sandbox else base_url
        self.timeout = timeout
        self._logger = logger
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "Bitcoin-Broker-Scheduler/1.0",
            }
        )

    @classmethod
    def from_secrets(
        cls,
        store: SecretStore,
        secret_id: str,
        stage: str,
        logger: logging.Logger | None = None,
    ) -> "ExchangeClient":
        """
        Build a client from credentials held in a secret store.

        Outside prod, a failed lookup falls back to demo credentials against the
        sandbox. In prod the error propagates and startup must abort.
        """
        use_sandbox = stage != "prod"

        try:
            raw = store.get_secret_value(secret_id)
            config = json.loads(raw)
            return cls(
                api_key=config["apiKey"],
                api_secret=config["apiSecret"],
                base_url=config["baseUrl"],
                timeout=float(config.get("timeout", 5)),
                use_sandbox=use_sandbox,
                logger=logger,
            )
        except Exception as e:
            if logger:
                logger.error(f"Error retrieving exchange API credentials: {e}")
            if stage == "prod":
                raise

            if logger:
                logger.warning(f"Using demo credentials for {stage} environment")
            return cls(
                api_key=DEMO_CREDENTIALS["apiKey"],
                api_secret=DEMO_CREDENTIALS["apiSecret"],
                base_url=DEMO_CREDENTIALS["baseUrl"],
                use_sandbox=True,
                logger=logger,
            )

    def _log(self, level: int, msg: str) -> None:
        """Log a message if logger is configured."""
        if self._logger:
            self._logger.log(level, msg)

    def _get_timestamp(self) -> str:
        """Get current timestamp in milliseconds."""
        return str(int(time.time() * 1000))

    def _sign(self, timestamp: str, method: str, path: str, body: str) -> str:
        """Generate HMAC SHA256 signature over timestamp, method, path and body."""
        payload = f"{timestamp}{method.upper()}{path}{body}"
        return hmac.new(
            self.api_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _request(
        self, method: str, path: str, data: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Make a signed HTTP request to the exchange API."""
        url = f"{self.base_url}{path}"
        body = json.dumps(data, separators=(",", ":")) if data is not None else ""
        timestamp = self._get_timestamp()
        headers = {
            "X-API-Key": self.api_key,
            "X-API-Timestamp": timestamp,
            "X-API-Signature": self._sign(timestamp, method, path, body),
        }

        self._log(logging.DEBUG, f"Request: {method} {path}")

        try:
            response = self.session.request(
                method,
                url,
                data=body.encode("utf-8") if body else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ExchangeAPIError(f"Network error: {e}") from e

        try:
            payload = response.json() if response.text else {}
        except ValueError:
            payload = response.text

        if not 200 <= response.status_code < 300:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ExchangeAPIError(
                f"Exchange API error {response.status_code}: {message or response.reason}",
                status_code=response.status_code,
                status_text=response.reason,
                response_data=payload,
            )

        if not isinstance(payload, dict):
            raise ExchangeAPIError(
                "Unexpected response body from exchange",
                status_code=response.status_code,
                status_text=response.reason,
                response_data=payload,
            )

        return payload

    def purchase(
        self,
        user_id: str,
        amount: Decimal,
        source_of_funds: str,
        idempotency_key: str,
    ) -> PurchaseResult:
        """
        Buy bitcoin for the given fiat amount.

        Never raises for exchange-side failures: network, HTTP and malformed
        responses are all returned as PurchaseResult(success=False).

        Args:
            user_id: Plan owner
            amount: Fiat amount to spend
            source_of_funds: Funding source reference
            idempotency_key: Client request id; repeated keys must not buy twice

        Returns:
            PurchaseResult
        """
        self._log(
            logging.INFO,
            f"Executing bitcoin purchase: user={user_id} amount={amount} "
            f"clientRequestId={idempotency_key}",
        )

        request_data = {
            "userId": user_id,
            "amount": str(amount),
            "sourceOfFunds": source_of_funds,
            "clientRequestId": idempotency_key,
            "timestamp": datetime.now(UTC).isoformat(),
        }

        try:
            data = self._request("POST", PURCHASE_PATH, request_data)

            status = data.get("status")
            if status is not None and status not in SUCCESS_STATUSES:
                raise ExchangeAPIError(
                    data.get("message") or f"Purchase not filled: {status}",
                    response_data=data,
                )

            return PurchaseResult(
                success=True,
                exchange_transaction_id=data.get("transactionId"),
                bitcoin_amount=_to_decimal(data, "bitcoinAmount"),
                exchange_rate=_to_decimal(data, "exchangeRate"),
                fees=_to_decimal(data, "fees", default="0"),
            )

        except ExchangeAPIError as e:
            self._log(logging.ERROR, f"Bitcoin purchase failed: {e}")

            details: dict[str, Any] = {
                "timestamp": datetime.now(UTC).isoformat(),
                "requestId": idempotency_key,
            }
            if e.status_code is not None:
                details["statusCode"] = e.status_code
                details["statusText"] = e.status_text
                details["responseData"] = e.response_data

            return PurchaseResult(
                success=False, error_message=e.msg, error_details=details
            )


def _to_decimal(data: dict[str, Any], key: str, default: str | None = None) -> Decimal:
    raw = data.get(key, default)
    if raw is None:
        raise ExchangeAPIError(f"Missing {key} in exchange response", response_data=data)
    try:
        return Decimal(str(raw))
    except InvalidOperation as e:
        raise ExchangeAPIError(
            f"Invalid {key} in exchange response: {raw}", response_data=data
        ) from e
