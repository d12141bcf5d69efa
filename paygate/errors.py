"""
Payment error taxonomy.

Provider adapters translate transport and provider failures into these types,
so nothing provider-specific crosses the adapter boundary. The application
renders them through a single exception handler (see paygate.main).
"""
from typing import Optional


class PaymentError(Exception):
    code = "PAYMENT_ERROR"
    http_status = 500
    retryable = False
    default_detail = "Payment processing failed."

    def __init__(self, detail: Optional[str] = None, *, diagnostic: Optional[str] = None):
        self.detail = detail or self.default_detail
        # Provider-side text, only surfaced outside production.
        self.diagnostic = diagnostic
        super().__init__(self.detail)


class ProviderConfigurationError(PaymentError):
    code = "PROVIDER_NOT_CONFIGURED"
    http_status = 503
    default_detail = "Payment provider is not configured."


class InvalidProvider(PaymentError):
    code = "INVALID_PROVIDER"
    http_status = 400
    default_detail = "Unknown payment provider."


class InvalidOrderId(PaymentError):
    code = "INVALID_ORDER_ID"
    http_status = 400
    default_detail = "Invalid order id."


class OrderOwnershipError(PaymentError):
    code = "ORDER_NOT_OWNED"
    http_status = 403
    default_detail = "Payment order does not belong to this account."


class AccountNotFound(PaymentError):
    code = "ACCOUNT_NOT_FOUND"
    http_status = 404
    default_detail = "Account not found."


class SignatureMismatch(PaymentError):
    code = "INVALID_SIGNATURE"
    http_status = 401
    default_detail = "Invalid webhook signature."


class UnrecognizedWebhook(PaymentError):
    code = "UNRECOGNIZED_PROVIDER"
    http_status = 400
    default_detail = "Unrecognized webhook provider."


class MalformedWebhook(PaymentError):
    code = "INVALID_WEBHOOK_PAYLOAD"
    http_status = 400
    default_detail = "Invalid webhook payload."


class OrderCreationFailed(PaymentError):
    """The provider did not create the order; creating a new one is safe."""

    code = "ORDER_CREATION_FAILED"
    http_status = 502
    retryable = True
    default_detail = "Failed to create payment order."


class AmbiguousProviderResponse(PaymentError):
    """The provider may or may not have acted on the request."""

    code = "PROVIDER_RESPONSE_AMBIGUOUS"
    http_status = 504
    default_detail = "Payment provider did not confirm the request. Check your payment status before retrying."


class InvalidTransition(PaymentError):
    code = "INVALID_TRANSITION"
    http_status = 409
    default_detail = "Subscription cannot change to the requested state."


class OrderAlreadyUsed(PaymentError):
    code = "ORDER_ALREADY_USED"
    http_status = 409
    default_detail = "This payment order was already applied to an earlier subscription period."


class OrderExpired(PaymentError):
    code = "ORDER_EXPIRED"
    http_status = 410
    default_detail = "This payment order is too old to verify. Create a new order."
