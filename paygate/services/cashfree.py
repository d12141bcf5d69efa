import logging
from typing import Any

import requests

from paygate import models
from paygate.errors import ProviderConfigurationError
from paygate.order_ids import ORDER_PREFIX
from paygate.services.base import (
    OrderResult,
    OutcomeState,
    PaymentOutcome,
    PaymentProvider,
    ProviderAdapter,
)

logger = logging.getLogger(__name__)

CASHFREE_API_VERSION = "2023-08-01"
CASHFREE_SANDBOX_BASE = "https://sandbox.cashfree.com/pg"
CASHFREE_PRODUCTION_BASE = "https://api.cashfree.com/pg"
PLACEHOLDER_PHONE = "9999999999"
_FAILED_PAYMENT_STATES = {"FAILED", "USER_DROPPED", "CANCELLED", "VOID"}


class CashfreeAdapter(ProviderAdapter):
    provider = PaymentProvider.CASHFREE
    order_prefix = ORDER_PREFIX

    @property
    def configured(self) -> bool:
        return self.settings.cashfree.configured

    @property
    def base_url(self) -> str:
        return CASHFREE_PRODUCTION_BASE if self.settings.is_production else CASHFREE_SANDBOX_BASE

    def _headers(self) -> dict[str, str]:
        credentials = self.settings.cashfree
        if not credentials.configured:
            raise ProviderConfigurationError("Cashfree payments are not configured.")
        return {
            "x-client-id": credentials.app_id,
            "x-client-secret": credentials.secret_key,
            "x-api-version": CASHFREE_API_VERSION,
            "Content-Type": "application/json",
        }

    def create_order(self, account: models.User) -> OrderResult:
        headers = self._headers()
        order_id, created_at, expires_at = self._new_order_window(account)
        amount = self.settings.amount_minor_units

        request_body = {
            "order_id": order_id,
            "order_amount": round(amount / 100, 2),
            "order_currency": self.settings.currency,
            "customer_details": {
                "customer_id": f"USER_{account.id}",
                "customer_name": account.username or f"user{account.id}",
                "customer_email": account.email or "noemail@example.com",
                "customer_phone": PLACEHOLDER_PHONE,
            },
            "order_meta": {
                "return_url": f"{self.settings.client_url}/?payment_id={{order_id}}&payment_status={{order_status}}",
                "notify_url": self.settings.webhook_url,
            },
            "order_expiry_time": expires_at.strftime("%Y-%m-%dT%H:%M:%S+00:00"),
            "order_note": "Yearly Subscription - 1 Year Access",
        }
        order_data = self._send_order_request(
            "POST",
            f"{self.base_url}/orders",
            headers=headers,
            json=request_body,
        )
        logger.info("Cashfree order created order_id=%s user_id=%s", order_id, account.id)

        return OrderResult(
            order_id=str(order_data.get("order_id") or order_id),
            provider=self.provider,
            amount_minor_units=amount,
            currency=self.settings.currency,
            created_at=created_at,
            expires_at=expires_at,
            payment_link=order_data.get("payment_link"),
            redirect_info={
                "payment_session_id": order_data.get("payment_session_id"),
                "cf_order_id": order_data.get("cf_order_id"),
            },
        )

    def verify_order(self, order_id: str) -> PaymentOutcome:
        headers = self._headers()
        try:
            response = self.http.get(
                f"{self.base_url}/orders/{order_id}/payments",
                headers=headers,
                timeout=self.settings.provider_timeout_seconds,
            )
        except requests.Timeout:
            logger.warning("Cashfree verification timed out order_id=%s", order_id)
            return PaymentOutcome(OutcomeState.UNKNOWN, "Verification timed out.")
        except requests.RequestException as exc:
            logger.warning("Cashfree verification failed order_id=%s error=%s", order_id, exc)
            return PaymentOutcome(OutcomeState.UNKNOWN, "Unable to reach payment provider.")

        if response.status_code >= 400:
            logger.warning(
                "Cashfree verification returned status=%s order_id=%s",
                response.status_code,
                order_id,
            )
            return PaymentOutcome(OutcomeState.UNKNOWN, "Payment provider could not confirm the order.")

        try:
            payments = response.json()
        except ValueError:
            return PaymentOutcome(OutcomeState.UNKNOWN, "Invalid response received from payment provider.")
        if not isinstance(payments, list):
            return PaymentOutcome(OutcomeState.UNKNOWN, "Unexpected response format from payment provider.")

        return _outcome_from_payments(payments)


def _outcome_from_payments(payments: list[Any]) -> PaymentOutcome:
    states = []
    for payment in payments:
        if not isinstance(payment, dict):
            continue
        state = str(payment.get("payment_status") or "").strip().upper()
        if state == "SUCCESS":
            return PaymentOutcome(
                OutcomeState.SUCCEEDED,
                "Payment captured.",
                provider_payment_id=str(payment.get("cf_payment_id") or "") or None,
            )
        states.append(state)

    if states and all(state in _FAILED_PAYMENT_STATES for state in states):
        return PaymentOutcome(OutcomeState.FAILED, "All payment attempts failed.")
    return PaymentOutcome(OutcomeState.UNKNOWN, "Payment not completed yet.")
