"""
TradeBridge Core: Collaborator HTTP Clients

Thin JSON-over-HTTP adapters for the payment rail, the escrow service and the
external trading platform. Each client maps HTTP outcomes onto the engine's
exception taxonomy; payload validation lives in core.payloads.

Retries on:
- 429 (rate limit), unless the client maps it to QuotaExceeded
- 5xx (server errors)
- Network errors (timeout, connection)

Does NOT retry on other 4xx.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from core.exceptions import (
    EscrowUnavailable,
    InsufficientFunds,
    InvalidEscrowState,
    MalformedPayload,
    PartnerValidationFailed,
    QuotaExceeded,
    RailUnavailable,
    TradeEngineError,
    TransientNetworkError,
)
from core.payloads import parse_escrow_receipt
from core.retry import backoff_delay

logger = logging.getLogger(__name__)


class JsonApiClient:
    """
    Shared request loop.

    In-flight requests are capped by a BoundedSemaphore shared by every
    thread using this client instance.
    """

    service_name = "api"
    retry_on_429 = True

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        max_in_flight: int = 8,
        max_retries: int = 1,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(int(max_retries), 1)
        self.session = session or requests.Session()
        self._slots = threading.BoundedSemaphore(max(int(max_in_flight), 1))
        self._sleep = sleep

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra:
            headers.update(extra)
        return headers

    def _unavailable(self, detail: str) -> TradeEngineError:
        return TransientNetworkError(f"{self.service_name}: {detail}")

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> dict:
        """
        Make one logical request, retrying transient failures.

        Raises:
            requests.exceptions.HTTPError: non-retryable 4xx (callers map it)
            MalformedPayload: response body is not JSON
            TransientError subclass from ``_unavailable``: retries exhausted
        """
        url = f"{self.base_url}{path}"
        last_error = "no attempt made"

        for attempt in range(self.max_retries):
            try:
                with self._slots:
                    response = self.session.request(
                        method,
                        url,
                        headers=self._headers(headers),
                        json=body,
                        params=params,
                        timeout=self.timeout,
                    )
                response.raise_for_status()
                return response.json() if response.content else {}

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code

                if 400 <= status_code < 500 and (status_code != 429 or not self.retry_on_429):
                    if status_code == 404:
                        logger.debug(f"{self.service_name} 404: {path}")
                    else:
                        logger.error(f"{self.service_name} client error: {status_code} - {e.response.text}")
                    raise

                logger.warning(
                    f"{self.service_name} HTTP {status_code} on {path}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = f"HTTP {status_code}"

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(
                    f"Network error on {self.service_name} {path}: {e}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = str(e)

            except ValueError as e:
                raise MalformedPayload(self.service_name, f"non-JSON response from {path}") from e

            if attempt < self.max_retries - 1:
                delay = backoff_delay(attempt)
                logger.info(f"Retrying {self.service_name} in {delay:.1f}s...")
                self._sleep(delay)

        logger.error(f"All {self.max_retries} attempts exhausted for {self.service_name} {path}")
        raise self._unavailable(last_error)


class PaymentRailClient(JsonApiClient):
    """Read-only view of payments on the rail"""

    service_name = "payment_rail"

    def _unavailable(self, detail: str) -> TradeEngineError:
        return RailUnavailable(f"payment rail: {detail}")

    def get_payment(self, payment_ref: str) -> dict:
        try:
            return self._request("GET", f"/payments/{payment_ref}")
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code
            if status_code == 404:
                # Not indexed yet
                return {"payment_ref": payment_ref, "status": "pending", "amount": 0, "confirmations": 0}
            raise MalformedPayload(self.service_name, f"HTTP {status_code} for {payment_ref}") from e


class EscrowServiceClient(JsonApiClient):
    """
    Escrow program front end. Every mutating call carries the caller's
    idempotency key in the Idempotency-Key header.
    """

    service_name = "escrow_service"

    def _unavailable(self, detail: str) -> TradeEngineError:
        return EscrowUnavailable(f"escrow service: {detail}")

    def _mutate(self, operation: str, subject: str, path: str, body: dict, idempotency_key: str) -> dict:
        try:
            return self._request("POST", path, body=body, headers={"Idempotency-Key": idempotency_key})
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code
            if status_code == 402:
                raise InsufficientFunds(f"escrow {operation} for {subject}: insufficient funds") from e
            raise InvalidEscrowState(subject, f"http_{status_code}", operation) from e

    def lock(self, order_id: str, amount: int, idempotency_key: str) -> str:
        data = self._mutate(
            "lock", order_id, "/escrows",
            {"order_id": order_id, "amount": amount},
            idempotency_key,
        )
        return parse_escrow_receipt(data, "locked").escrow_id

    def release(self, escrow_id: str, idempotency_key: str) -> None:
        data = self._mutate("release", escrow_id, f"/escrows/{escrow_id}/release", {}, idempotency_key)
        parse_escrow_receipt(data, "released")

    def refund(self, escrow_id: str, idempotency_key: str) -> str:
        data = self._mutate("refund", escrow_id, f"/escrows/{escrow_id}/refund", {}, idempotency_key)
        return parse_escrow_receipt(data, "refunded").refund_ref


class TradePlatformClient(JsonApiClient):
    """External trading platform (trade offers)"""

    service_name = "trade_platform"
    retry_on_429 = False

    def _raise_for(self, e: requests.exceptions.HTTPError, subject: str):
        response = e.response
        status_code = response.status_code
        if status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise QuotaExceeded(self.api_key or "", retry_after, "platform") from e
        raise PartnerValidationFailed(f"platform rejected {subject}: HTTP {status_code} {response.text[:200]}") from e

    def create_offer(self, buyer_ref: str, items: List[str], trade_url: str, message: str = "") -> dict:
        body = {"partner": buyer_ref, "trade_url": trade_url, "items": list(items), "message": message}
        try:
            return self._request("POST", "/offers", body=body)
        except requests.exceptions.HTTPError as e:
            self._raise_for(e, f"offer for {buyer_ref}")

    def get_offer(self, offer_id: str) -> dict:
        try:
            return self._request("GET", f"/offers/{offer_id}")
        except requests.exceptions.HTTPError as e:
            self._raise_for(e, f"offer {offer_id}")


def _parse_retry_after(value: Optional[str], default: float = 60.0) -> float:
    if not value:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        return default
