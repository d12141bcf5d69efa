import base64
import hashlib
import json
import logging

from paygate import models
from paygate.errors import AmbiguousProviderResponse, OrderCreationFailed, ProviderConfigurationError
from paygate.order_ids import ORDER_PREFIX
from paygate.services.base import (
    OrderResult,
    OutcomeState,
    PaymentOutcome,
    PaymentProvider,
    ProviderAdapter,
)

logger = logging.getLogger(__name__)

PHONEPE_UAT_BASE = "https://api-preprod.phonepe.com/apis/pg-sandbox"
PHONEPE_PRODUCTION_BASE = "https://api.phonepe.com/apis/hermes"
PAY_ENDPOINT = "/pg/v1/pay"
PLACEHOLDER_PHONE = "9999999999"


def sign_request(base64_payload: str, endpoint: str, salt_key: str, salt_index: str) -> str:
    digest = hashlib.sha256(f"{base64_payload}{endpoint}{salt_key}".encode("utf-8")).hexdigest()
    return f"{digest}###{salt_index}"


class PhonePeAdapter(ProviderAdapter):
    provider = PaymentProvider.PHONEPE
    order_prefix = ORDER_PREFIX

    @property
    def configured(self) -> bool:
        return self.settings.phonepe.configured

    @property
    def base_url(self) -> str:
        return PHONEPE_PRODUCTION_BASE if self.settings.is_production else PHONEPE_UAT_BASE

    def create_order(self, account: models.User) -> OrderResult:
        credentials = self.settings.phonepe
        if not credentials.configured:
            raise ProviderConfigurationError("PhonePe payments are not configured.")

        order_id, created_at, expires_at = self._new_order_window(account)
        amount = self.settings.amount_minor_units
        payload = {
            "merchantId": credentials.merchant_id,
            "merchantTransactionId": order_id,
            "merchantUserId": f"USER_{account.id}",
            "amount": amount,
            "redirectUrl": f"{self.settings.client_url}/?order_id={order_id}&provider={self.provider.value}",
            "redirectMode": "REDIRECT",
            "callbackUrl": self.settings.webhook_url,
            "mobileNumber": PLACEHOLDER_PHONE,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        base64_payload = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
        checksum = sign_request(base64_payload, PAY_ENDPOINT, credentials.salt_key, credentials.salt_index)

        response_data = self._send_order_request(
            "POST",
            f"{self.base_url}{PAY_ENDPOINT}",
            headers={"Content-Type": "application/json", "X-VERIFY": checksum},
            json={"request": base64_payload},
        )
        if not response_data.get("success"):
            logger.warning(
                "PhonePe declined order order_id=%s code=%s",
                order_id,
                response_data.get("code"),
            )
            raise OrderCreationFailed(diagnostic=str(response_data.get("message") or "PhonePe payment creation failed"))

        redirect_info = ((response_data.get("data") or {}).get("instrumentResponse") or {}).get("redirectInfo") or {}
        payment_link = str(redirect_info.get("url") or "").strip()
        if not payment_link:
            # The order exists at PhonePe but we cannot hand the user a link to it.
            raise AmbiguousProviderResponse(diagnostic="PhonePe response did not include a redirect URL.")

        logger.info("PhonePe order created order_id=%s user_id=%s", order_id, account.id)
        return OrderResult(
            order_id=order_id,
            provider=self.provider,
            amount_minor_units=amount,
            currency=self.settings.currency,
            created_at=created_at,
            expires_at=expires_at,
            payment_link=payment_link,
            redirect_info={"url": payment_link, "method": redirect_info.get("method") or "GET"},
        )

    def verify_order(self, order_id: str) -> PaymentOutcome:
        if not self.configured:
            raise ProviderConfigurationError("PhonePe payments are not configured.")
        logger.info("PhonePe verification requested order_id=%s; waiting for provider callback", order_id)
        return PaymentOutcome(OutcomeState.UNKNOWN, "Waiting for payment confirmation from PhonePe.")
