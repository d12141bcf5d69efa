"""
Payment provider adapter contract.

Every provider creates orders whose id embeds the owning account (see
paygate.order_ids) and reports payment outcomes in one normalized shape.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import requests

from paygate import models
from paygate.config import Settings
from paygate.errors import AmbiguousProviderResponse, InvalidProvider, OrderCreationFailed
from paygate.order_ids import build_order_id
from paygate.subscriptions import utcnow

logger = logging.getLogger(__name__)


class PaymentProvider(str, Enum):
    CASHFREE = "cashfree"
    PHONEPE = "phonepe"
    RUPEEPAYMENTS = "rupeepayments"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "PaymentProvider":
        value = str(raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            raise InvalidProvider(f"Unknown payment provider: {value or '<missing>'}.")


class OutcomeState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"
    MANUAL_REVIEW = "manual_review"


@dataclass
class PaymentOutcome:
    state: OutcomeState
    detail: str = ""
    provider_payment_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == OutcomeState.SUCCEEDED


@dataclass
class OrderResult:
    order_id: str
    provider: PaymentProvider
    amount_minor_units: int
    currency: str
    created_at: datetime
    expires_at: datetime
    payment_link: Optional[str] = None
    redirect_info: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    provider: PaymentProvider
    order_prefix: str

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self.http = session or requests.Session()

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @abstractmethod
    def create_order(self, account: models.User) -> OrderResult:
        ...

    @abstractmethod
    def verify_order(self, order_id: str) -> PaymentOutcome:
        ...

    def _new_order_window(self, account: models.User) -> tuple[str, datetime, datetime]:
        created_at = utcnow()
        order_id = build_order_id(self.order_prefix, account.id, _epoch_millis(created_at))
        expires_at = created_at + timedelta(minutes=self.settings.order_ttl_minutes)
        return order_id, created_at, expires_at

    def _send_order_request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """
        Submit an order-creating request and classify failures.

        Failures before the provider could have seen the request are safe to
        retry; anything after that point is ambiguous.
        """
        try:
            response = self.http.request(
                method=method,
                url=url,
                timeout=self.settings.provider_timeout_seconds,
                **kwargs,
            )
        except requests.ConnectTimeout as exc:
            logger.warning("%s order request could not connect: %s", self.provider.value, exc)
            raise OrderCreationFailed(diagnostic=str(exc))
        except requests.Timeout as exc:
            logger.error("%s order request timed out after sending: %s", self.provider.value, exc)
            raise AmbiguousProviderResponse(diagnostic=str(exc))
        except requests.ConnectionError as exc:
            logger.warning("%s order request connection failed: %s", self.provider.value, exc)
            raise OrderCreationFailed(diagnostic=str(exc))
        except requests.RequestException as exc:
            logger.error("%s order request failed: %s", self.provider.value, exc)
            raise AmbiguousProviderResponse(diagnostic=str(exc))

        if 400 <= response.status_code < 500:
            logger.warning(
                "%s rejected order request status=%s body=%s",
                self.provider.value,
                response.status_code,
                response.text[:500],
            )
            raise OrderCreationFailed(diagnostic=response.text[:500])
        if response.status_code >= 500:
            logger.error("%s order request returned status=%s", self.provider.value, response.status_code)
            raise AmbiguousProviderResponse(diagnostic=response.text[:500])

        try:
            payload = response.json()
        except ValueError:
            raise AmbiguousProviderResponse(diagnostic="Provider returned a non-JSON response.")
        if not isinstance(payload, dict):
            raise AmbiguousProviderResponse(diagnostic="Unexpected response format from provider.")
        return payload


def _epoch_millis(naive_utc: datetime) -> int:
    return int((naive_utc - datetime(1970, 1, 1)).total_seconds() * 1000)
