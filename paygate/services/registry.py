import logging
from functools import lru_cache
from typing import Mapping

from paygate.config import Settings, get_settings
from paygate.errors import ProviderConfigurationError
from paygate.services.base import PaymentProvider, ProviderAdapter
from paygate.services.cashfree import CashfreeAdapter
from paygate.services.phonepe import PhonePeAdapter
from paygate.services.rupeepayments import RupeePaymentsAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: Mapping[PaymentProvider, type[ProviderAdapter]] = {
    PaymentProvider.CASHFREE: CashfreeAdapter,
    PaymentProvider.PHONEPE: PhonePeAdapter,
    PaymentProvider.RUPEEPAYMENTS: RupeePaymentsAdapter,
}


class ProviderRegistry:
    def __init__(self, settings: Settings, adapters: Mapping[PaymentProvider, ProviderAdapter]) -> None:
        missing = set(PaymentProvider) - set(adapters)
        if missing:
            raise ValueError(f"Missing adapters for: {sorted(p.value for p in missing)}")
        self.settings = settings
        self._adapters = dict(adapters)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        adapters = {provider: adapter_cls(settings) for provider, adapter_cls in ADAPTER_CLASSES.items()}
        for provider, adapter in adapters.items():
            if not adapter.configured:
                logger.warning("Payment provider %s is unavailable: credentials missing", provider.value)
        return cls(settings, adapters)

    def get(self, provider: PaymentProvider) -> ProviderAdapter:
        return self._adapters[provider]

    def require(self, provider: PaymentProvider) -> ProviderAdapter:
        adapter = self.get(provider)
        if not adapter.configured:
            raise ProviderConfigurationError(f"{provider.value} payments are not configured.")
        return adapter

    def available(self) -> list[str]:
        return [provider.value for provider, adapter in self._adapters.items() if adapter.configured]


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    return ProviderRegistry.from_settings(get_settings())
