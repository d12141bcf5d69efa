import logging
from urllib.parse import urlencode

from paygate import models
from paygate.errors import ProviderConfigurationError
from paygate.order_ids import MANUAL_ORDER_PREFIX
from paygate.services.base import (
    OrderResult,
    OutcomeState,
    PaymentOutcome,
    PaymentProvider,
    ProviderAdapter,
)

logger = logging.getLogger(__name__)


class RupeePaymentsAdapter(ProviderAdapter):
    """
    RupeePayments has no automated verification channel.
    Every reported payment is routed to an operator for confirmation.
    """

    provider = PaymentProvider.RUPEEPAYMENTS
    order_prefix = MANUAL_ORDER_PREFIX

    @property
    def configured(self) -> bool:
        return self.settings.rupeepayments.configured

    def create_order(self, account: models.User) -> OrderResult:
        if not self.configured:
            raise ProviderConfigurationError("RupeePayments is not configured.")

        order_id, created_at, expires_at = self._new_order_window(account)
        query = urlencode({"order_id": order_id, "provider": self.provider.value})
        confirmation_url = f"{self.settings.client_url}/payments/manual?{query}"
        logger.info("RupeePayments manual order created order_id=%s user_id=%s", order_id, account.id)

        return OrderResult(
            order_id=order_id,
            provider=self.provider,
            amount_minor_units=self.settings.amount_minor_units,
            currency=self.settings.currency,
            created_at=created_at,
            expires_at=expires_at,
            payment_link=confirmation_url,
            redirect_info={"url": confirmation_url, "manual_verification": True},
        )

    def verify_order(self, order_id: str) -> PaymentOutcome:
        if not self.configured:
            raise ProviderConfigurationError("RupeePayments is not configured.")
        return PaymentOutcome(
            OutcomeState.MANUAL_REVIEW,
            "Payment requires manual verification by an administrator.",
        )
