from __future__ import annotations

import threading

from campusmarket.integrations.payments.base import (
    PaymentsProvider,
    PaymentInitializeResult,
    PaymentVerifyResult,
    TransferResult,
)

_LOCK = threading.Lock()
# reference -> {"amount", "email", "metadata", "status"}; per process, dev and tests only.
_SESSIONS: dict[str, dict] = {}


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def initialize(self, *, amount: float, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        with _LOCK:
            _SESSIONS[reference] = {
                "amount": float(amount),
                "email": email,
                "metadata": dict(metadata or {}),
                "status": "success",
            }
        return PaymentInitializeResult(
            authorization_url=f"https://example.com/mock/pay?reference={reference}",
            reference=reference,
            provider=self.name,
            raw={"amount": amount, "email": email},
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        with _LOCK:
            session = dict(_SESSIONS.get(reference) or {})
        if not session:
            return PaymentVerifyResult(
                status="abandoned",
                amount=0.0,
                currency="NGN",
                customer="",
                reference=reference,
                raw={"reference": reference, "provider": self.name},
            )
        return PaymentVerifyResult(
            status=session.get("status") or "success",
            amount=float(session.get("amount") or 0.0),
            currency="NGN",
            customer=session.get("email") or "",
            reference=reference,
            metadata=session.get("metadata") or {},
            raw={"reference": reference, "provider": self.name},
        )

    def transfer(self, *, amount: float, bank_code: str, account_number: str, account_name: str, reference: str, reason: str = "") -> TransferResult:
        return TransferResult(
            status="success",
            reference=reference,
            transfer_code=f"MOCK-TRF-{reference}",
            raw={"amount": amount, "account_number": account_number[-4:]},
        )


def set_session_status(reference: str, status: str) -> None:
    """Force the gateway outcome for a reference (dev tooling and tests)."""
    with _LOCK:
        if reference in _SESSIONS:
            _SESSIONS[reference]["status"] = status
