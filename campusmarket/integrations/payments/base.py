from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class PaymentInitializeResult:
    authorization_url: str
    reference: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    status: str
    amount: float
    currency: str
    customer: str
    reference: str = ""
    metadata: dict = field(default_factory=dict)
    raw: dict | None = None


@dataclass
class TransferResult:
    status: str
    reference: str
    transfer_code: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def initialize(self, *, amount: float, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def transfer(
        self,
        *,
        amount: float,
        bank_code: str,
        account_number: str,
        account_name: str,
        reference: str,
        reason: str = "",
    ) -> TransferResult:
        raise NotImplementedError
