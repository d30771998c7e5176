from __future__ import annotations

import os

from campusmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from campusmarket.integrations.payments.base import PaymentsProvider
from campusmarket.integrations.payments.mock_provider import MockPaymentsProvider
from campusmarket.integrations.payments.paystack_provider import PaystackPaymentsProvider


def build_payments_provider(config) -> PaymentsProvider:
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()

    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "paystack":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (config.get("PAYSTACK_SECRET_KEY") or os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SECRET_KEY")

    return PaystackPaymentsProvider(secret_key=secret_key)


def payment_health(config) -> dict:
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()
    missing = []
    if provider == "paystack" and not (config.get("PAYSTACK_SECRET_KEY") or os.getenv("PAYSTACK_SECRET_KEY") or "").strip():
        missing.append("PAYSTACK_SECRET_KEY")
    if provider == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
