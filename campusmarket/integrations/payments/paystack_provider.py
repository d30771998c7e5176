from __future__ import annotations

import os
import requests

from campusmarket.integrations.common import IntegrationCallError
from campusmarket.integrations.payments.base import (
    PaymentsProvider,
    PaymentInitializeResult,
    PaymentVerifyResult,
    TransferResult,
)

API_BASE = "https://api.paystack.co"


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, timeout: int = 25):
        self.secret_key = secret_key
        self.timeout = timeout

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _unwrap(self, r: requests.Response, failure_code: str) -> dict:
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            raise IntegrationCallError(f"{failure_code}:{msg}")
        return j

    def initialize(self, *, amount: float, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        payload = {
            "email": email,
            "amount": int(round(float(amount) * 100)),
            "reference": reference,
            "metadata": metadata or {},
        }
        callback_url = (os.getenv("PAYSTACK_CALLBACK_URL") or "").strip()
        if callback_url:
            payload["callback_url"] = callback_url
        r = requests.post(f"{API_BASE}/transaction/initialize", headers=self._headers(), json=payload, timeout=self.timeout)
        j = self._unwrap(r, "PAYSTACK_INIT_FAILED")
        data = j.get("data") or {}
        return PaymentInitializeResult(
            authorization_url=(data.get("authorization_url") or "").strip(),
            reference=(data.get("reference") or reference).strip(),
            provider=self.name,
            raw=j,
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        r = requests.get(f"{API_BASE}/transaction/verify/{ref}", headers=self._headers(), timeout=self.timeout)
        j = self._unwrap(r, "PAYSTACK_VERIFY_FAILED")
        data = j.get("data") or {}
        try:
            amount = float(data.get("amount") or 0) / 100.0
        except (TypeError, ValueError):
            amount = 0.0
        metadata = data.get("metadata")
        return PaymentVerifyResult(
            status=(data.get("status") or "").strip().lower(),
            amount=amount,
            currency=(data.get("currency") or "NGN").strip().upper(),
            customer=((data.get("customer") or {}).get("email") or "").strip(),
            reference=(data.get("reference") or ref).strip(),
            metadata=metadata if isinstance(metadata, dict) else {},
            raw=j,
        )

    def transfer(self, *, amount: float, bank_code: str, account_number: str, account_name: str, reference: str, reason: str = "") -> TransferResult:
        recipient = self._unwrap(
            requests.post(
                f"{API_BASE}/transferrecipient",
                headers=self._headers(),
                json={
                    "type": "nuban",
                    "name": account_name,
                    "account_number": account_number,
                    "bank_code": bank_code,
                    "currency": "NGN",
                },
                timeout=self.timeout,
            ),
            "PAYSTACK_RECIPIENT_FAILED",
        )
        recipient_code = ((recipient.get("data") or {}).get("recipient_code") or "").strip()
        if not recipient_code:
            raise IntegrationCallError("PAYSTACK_RECIPIENT_FAILED:missing recipient_code")
        j = self._unwrap(
            requests.post(
                f"{API_BASE}/transfer",
                headers=self._headers(),
                json={
                    "source": "balance",
                    "amount": int(round(float(amount) * 100)),
                    "recipient": recipient_code,
                    "reason": reason or "Wallet withdrawal",
                    "reference": reference,
                },
                timeout=self.timeout,
            ),
            "PAYSTACK_TRANSFER_FAILED",
        )
        data = j.get("data") or {}
        return TransferResult(
            status=(data.get("status") or "pending").strip().lower(),
            reference=(data.get("reference") or reference).strip(),
            transfer_code=(data.get("transfer_code") or "").strip(),
            raw=j,
        )
