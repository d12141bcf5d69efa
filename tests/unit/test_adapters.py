"""Tests for provider adapters with a mocked HTTP session."""
import base64
import dataclasses
import json
import re
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from paygate import models
from paygate.config import CashfreeCredentials, PhonePeCredentials, RupeePaymentsCredentials
from paygate.errors import (
    AmbiguousProviderResponse,
    InvalidProvider,
    OrderCreationFailed,
    ProviderConfigurationError,
)
from paygate.order_ids import parse_account_id
from paygate.services.base import OutcomeState, PaymentProvider
from paygate.services.cashfree import CASHFREE_PRODUCTION_BASE, CASHFREE_SANDBOX_BASE, CashfreeAdapter
from paygate.services.phonepe import PAY_ENDPOINT, PHONEPE_UAT_BASE, PhonePeAdapter, sign_request
from paygate.services.registry import ProviderRegistry
from paygate.services.rupeepayments import RupeePaymentsAdapter


@pytest.fixture
def account():
    return models.User(id=7, email="seven@example.com", username="seven")


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


class TestPaymentProvider:
    def test_parse_is_case_insensitive(self):
        assert PaymentProvider.parse(" CashFree ") == PaymentProvider.CASHFREE

    @pytest.mark.parametrize("raw", ["stripe", "", None])
    def test_parse_rejects_unknown(self, raw):
        with pytest.raises(InvalidProvider) as exc_info:
            PaymentProvider.parse(raw)
        assert exc_info.value.code == "INVALID_PROVIDER"


class TestCashfreeCreateOrder:
    def test_creates_order_for_account(self, settings, http_session, account):
        def echo(method, url, **kwargs):
            return _response(
                payload={
                    "order_id": kwargs["json"]["order_id"],
                    "cf_order_id": "2149460581",
                    "payment_session_id": "session_abc",
                    "payment_link": "https://payments-test.cashfree.com/order/#session_abc",
                }
            )

        http_session.request.side_effect = echo
        order = CashfreeAdapter(settings, session=http_session).create_order(account)

        assert re.fullmatch(r"ORDER_7_\d{13}", order.order_id)
        assert parse_account_id(order.order_id) == 7
        assert order.provider == PaymentProvider.CASHFREE
        assert order.amount_minor_units == 20000
        assert order.expires_at - order.created_at == timedelta(minutes=30)
        assert order.redirect_info["payment_session_id"] == "session_abc"

        kwargs = http_session.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == f"{CASHFREE_SANDBOX_BASE}/orders"
        assert kwargs["timeout"] == 5.0
        assert kwargs["headers"]["x-client-id"] == "cf_test_app"
        assert kwargs["headers"]["x-api-version"] == "2023-08-01"
        assert kwargs["json"]["order_amount"] == 200.0
        assert kwargs["json"]["order_meta"]["notify_url"] == "http://localhost:8000/api/subscription/webhook"

    def test_production_uses_live_base_url(self, settings, http_session):
        production = dataclasses.replace(settings, environment="production")
        assert CashfreeAdapter(production, session=http_session).base_url == CASHFREE_PRODUCTION_BASE

    def test_unconfigured_makes_no_request(self, settings, http_session, account):
        unconfigured = dataclasses.replace(settings, cashfree=CashfreeCredentials("", "", ""))
        with pytest.raises(ProviderConfigurationError):
            CashfreeAdapter(unconfigured, session=http_session).create_order(account)
        http_session.request.assert_not_called()

    def test_rejected_request_is_retryable(self, settings, http_session, account):
        http_session.request.return_value = _response(400, text='{"message":"order_amount invalid"}')
        with pytest.raises(OrderCreationFailed) as exc_info:
            CashfreeAdapter(settings, session=http_session).create_order(account)
        assert exc_info.value.retryable
        assert "order_amount invalid" in exc_info.value.diagnostic

    def test_connect_timeout_is_retryable(self, settings, http_session, account):
        http_session.request.side_effect = requests.ConnectTimeout("connect timed out")
        with pytest.raises(OrderCreationFailed):
            CashfreeAdapter(settings, session=http_session).create_order(account)

    def test_read_timeout_is_ambiguous(self, settings, http_session, account):
        http_session.request.side_effect = requests.ReadTimeout("read timed out")
        with pytest.raises(AmbiguousProviderResponse) as exc_info:
            CashfreeAdapter(settings, session=http_session).create_order(account)
        assert not exc_info.value.retryable

    def test_server_error_is_ambiguous(self, settings, http_session, account):
        http_session.request.return_value = _response(502, text="Bad Gateway")
        with pytest.raises(AmbiguousProviderResponse):
            CashfreeAdapter(settings, session=http_session).create_order(account)

    def test_non_json_response_is_ambiguous(self, settings, http_session, account):
        http_session.request.return_value = _response(200, payload=ValueError("no json"))
        with pytest.raises(AmbiguousProviderResponse):
            CashfreeAdapter(settings, session=http_session).create_order(account)


class TestCashfreeVerifyOrder:
    def _verify(self, settings, http_session, response):
        http_session.get.return_value = response
        return CashfreeAdapter(settings, session=http_session).verify_order("ORDER_7_1700000000000")

    def test_success(self, settings, http_session):
        outcome = self._verify(
            settings,
            http_session,
            _response(payload=[
                {"cf_payment_id": 1, "payment_status": "FAILED"},
                {"cf_payment_id": 2, "payment_status": "SUCCESS"},
            ]),
        )
        assert outcome.succeeded
        assert outcome.provider_payment_id == "2"

        args, kwargs = http_session.get.call_args
        assert args[0] == f"{CASHFREE_SANDBOX_BASE}/orders/ORDER_7_1700000000000/payments"
        assert kwargs["timeout"] == 5.0

    def test_all_attempts_failed(self, settings, http_session):
        outcome = self._verify(
            settings,
            http_session,
            _response(payload=[{"payment_status": "FAILED"}, {"payment_status": "USER_DROPPED"}]),
        )
        assert outcome.state == OutcomeState.FAILED

    @pytest.mark.parametrize("payments", [[], [{"payment_status": "PENDING"}], [{"payment_status": "FAILED"}, {}]])
    def test_not_yet_complete(self, settings, http_session, payments):
        outcome = self._verify(settings, http_session, _response(payload=payments))
        assert outcome.state == OutcomeState.UNKNOWN

    def test_timeout_is_unknown(self, settings, http_session):
        http_session.get.side_effect = requests.ReadTimeout("timed out")
        outcome = CashfreeAdapter(settings, session=http_session).verify_order("ORDER_7_1700000000000")
        assert outcome.state == OutcomeState.UNKNOWN

    def test_error_status_is_unknown(self, settings, http_session):
        outcome = self._verify(settings, http_session, _response(404, payload={"message": "order not found"}))
        assert outcome.state == OutcomeState.UNKNOWN

    def test_unexpected_shape_is_unknown(self, settings, http_session):
        outcome = self._verify(settings, http_session, _response(payload={"payments": []}))
        assert outcome.state == OutcomeState.UNKNOWN


class TestPhonePe:
    def test_create_order_signs_request(self, settings, http_session, account):
        http_session.request.return_value = _response(
            payload={
                "success": True,
                "code": "PAYMENT_INITIATED",
                "data": {
                    "instrumentResponse": {
                        "type": "PAY_PAGE",
                        "redirectInfo": {"url": "https://mercury-uat.phonepe.com/transact/abc", "method": "GET"},
                    }
                },
            }
        )
        order = PhonePeAdapter(settings, session=http_session).create_order(account)

        kwargs = http_session.request.call_args.kwargs
        assert kwargs["url"] == f"{PHONEPE_UAT_BASE}{PAY_ENDPOINT}"
        base64_payload = kwargs["json"]["request"]
        assert kwargs["headers"]["X-VERIFY"] == sign_request(base64_payload, PAY_ENDPOINT, "phonepe-salt-key", "1")

        payload = json.loads(base64.b64decode(base64_payload))
        assert payload["merchantTransactionId"] == order.order_id
        assert payload["amount"] == 20000
        assert payload["callbackUrl"] == settings.webhook_url
        assert order.payment_link == "https://mercury-uat.phonepe.com/transact/abc"
        assert parse_account_id(order.order_id) == 7

    def test_declined_order(self, settings, http_session, account):
        http_session.request.return_value = _response(
            payload={"success": False, "code": "BAD_REQUEST", "message": "Invalid merchant"}
        )
        with pytest.raises(OrderCreationFailed):
            PhonePeAdapter(settings, session=http_session).create_order(account)

    def test_missing_redirect_is_ambiguous(self, settings, http_session, account):
        http_session.request.return_value = _response(payload={"success": True, "data": {}})
        with pytest.raises(AmbiguousProviderResponse):
            PhonePeAdapter(settings, session=http_session).create_order(account)

    def test_verify_waits_for_callback(self, settings, http_session):
        outcome = PhonePeAdapter(settings, session=http_session).verify_order("ORDER_7_1700000000000")
        assert outcome.state == OutcomeState.UNKNOWN
        http_session.get.assert_not_called()

    def test_unconfigured(self, settings, http_session, account):
        unconfigured = dataclasses.replace(settings, phonepe=PhonePeCredentials("", "", "1"))
        adapter = PhonePeAdapter(unconfigured, session=http_session)
        assert not adapter.configured
        with pytest.raises(ProviderConfigurationError):
            adapter.create_order(account)


class TestRupeePayments:
    def test_create_order_is_offline(self, settings, http_session, account):
        order = RupeePaymentsAdapter(settings, session=http_session).create_order(account)

        assert re.fullmatch(r"RPAY_7_\d{13}", order.order_id)
        assert order.payment_link.startswith("http://localhost:5173/payments/manual?")
        assert f"order_id={order.order_id}" in order.payment_link
        assert order.redirect_info["manual_verification"] is True
        http_session.request.assert_not_called()

    def test_verify_always_needs_manual_review(self, settings, http_session):
        outcome = RupeePaymentsAdapter(settings, session=http_session).verify_order("RPAY_7_1700000000000")
        assert outcome.state == OutcomeState.MANUAL_REVIEW
        assert not outcome.succeeded

    def test_unconfigured(self, settings, http_session):
        unconfigured = dataclasses.replace(settings, rupeepayments=RupeePaymentsCredentials(""))
        with pytest.raises(ProviderConfigurationError):
            RupeePaymentsAdapter(unconfigured, session=http_session).verify_order("RPAY_7_1700000000000")


class TestProviderRegistry:
    def test_available_lists_configured_providers(self, registry):
        assert registry.available() == ["cashfree", "phonepe", "rupeepayments"]

    def test_unconfigured_provider_is_unavailable(self, settings):
        partial = dataclasses.replace(settings, phonepe=PhonePeCredentials("", "", "1"))
        registry = ProviderRegistry.from_settings(partial)

        assert registry.available() == ["cashfree", "rupeepayments"]
        assert isinstance(registry.require(PaymentProvider.CASHFREE), CashfreeAdapter)
        with pytest.raises(ProviderConfigurationError) as exc_info:
            registry.require(PaymentProvider.PHONEPE)
        assert exc_info.value.http_status == 503

    def test_every_provider_needs_an_adapter(self, settings):
        with pytest.raises(ValueError):
            ProviderRegistry(settings, {PaymentProvider.CASHFREE: CashfreeAdapter(settings)})
