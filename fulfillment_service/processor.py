"""
Boundary to the external card/Stripe-like payment processor.

Only a definitive 4xx answer is a decline. Timeouts, connection errors and 5xx
are retried with exponential backoff and, once retries run out, surface as
ProcessorUnavailableError. They never mark a payment failed.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

import httpx

from .config import (
    HTTP_TIMEOUT,
    PAYMENT_PROCESSOR_API_KEY,
    PAYMENT_PROCESSOR_URL,
    PROCESSOR_BACKOFF,
    PROCESSOR_MAX_RETRIES,
)
from .errors import ProcessorDeclinedError, ProcessorUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class ProcessorResult:
    reference: str
    status: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class PaymentProcessor:
    """What the payment ledger needs from a processor."""

    def create_intent(self, payment) -> ProcessorResult:
        raise NotImplementedError

    def refund(self, payment, amount: Decimal) -> ProcessorResult:
        raise NotImplementedError

    def void(self, payment) -> ProcessorResult:
        raise NotImplementedError


class HttpPaymentProcessor(PaymentProcessor):
    def __init__(
        self,
        base_url: str = PAYMENT_PROCESSOR_URL,
        api_key: str = PAYMENT_PROCESSOR_API_KEY,
        client: Optional[httpx.Client] = None,
        max_retries: int = PROCESSOR_MAX_RETRIES,
        backoff: float = PROCESSOR_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.Client(timeout=HTTP_TIMEOUT, headers=headers)
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.sleep = sleep

    def _post(self, path: str, payload: dict, idempotency_key: str) -> dict:
        url = f"{self.base_url}/{path}"
        headers = {"Idempotency-Key": idempotency_key}
        last_error = None

        for attempt in range(self.max_retries):
            try:
                resp = self.client.post(url, json=payload, headers=headers)
            except httpx.TransportError as e:
                last_error = str(e)
                logger.warning(
                    "processor %s unreachable (attempt %d/%d): %s",
                    path, attempt + 1, self.max_retries, e,
                )
            else:
                if resp.status_code < 400:
                    return resp.json()
                if resp.status_code < 500:
                    try:
                        message = resp.json().get("error") or resp.text
                    except ValueError:
                        message = resp.text
                    raise ProcessorDeclinedError(f"Processor declined {path}: {message}")
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "processor %s returned %s (attempt %d/%d)",
                    path, resp.status_code, attempt + 1, self.max_retries,
                )

            if attempt < self.max_retries - 1:
                self.sleep(self.backoff * (2 ** attempt))

        raise ProcessorUnavailableError(f"Payment processor unavailable: {last_error}")

    def create_intent(self, payment) -> ProcessorResult:
        body = self._post(
            "intents",
            {
                "amount": to_minor_units(payment.amount),
                "method": payment.payment_method.value,
                "metadata": {"paymentId": payment.id, "orderId": payment.order_id},
            },
            idempotency_key=f"intent-{payment.id}",
        )
        return ProcessorResult(reference=body["id"], status=body.get("status"))

    def refund(self, payment, amount: Decimal) -> ProcessorResult:
        # key includes the running total so a retried call is deduplicated
        # but a later partial refund is not
        key = f"refund-{payment.id}-{to_minor_units(payment.refunded_amount + amount)}"
        body = self._post(
            "refunds",
            {
                "intent": payment.processor_reference,
                "transactionId": payment.transaction_id,
                "amount": to_minor_units(amount),
            },
            idempotency_key=key,
        )
        return ProcessorResult(reference=body["id"], status=body.get("status"))

    def void(self, payment) -> ProcessorResult:
        body = self._post(
            f"intents/{payment.processor_reference}/cancel",
            {"reason": "order_cancelled"},
            idempotency_key=f"void-{payment.id}",
        )
        return ProcessorResult(reference=body.get("id", payment.processor_reference), status=body.get("status"))

    def close(self):
        self.client.close()
