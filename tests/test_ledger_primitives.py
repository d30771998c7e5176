from __future__ import annotations

import unittest

from campusmarket.extensions import db
from campusmarket.models import Transaction, User
from campusmarket.services.errors import PreconditionFailed
from campusmarket.services.ledger_service import (
    TxnType,
    apply_balance_change,
    record_memo_entry,
    release_pending,
    transaction_scope,
)
from campusmarket.services.reconciliation_service import persist_report, recompute_balances
from market_case import MarketTestCase


class LedgerPrimitivesTestCase(MarketTestCase):
    def test_balance_change_writes_before_and_after(self):
        with self.app.app_context():
            uid = self._user("seller")
            self._fund(uid, "available", 1500, reference="LEDGER-A")
            row = Transaction.query.filter_by(user_id=uid, reference="LEDGER-A").one()
            self.assertEqual(row.balance_field, "available")
            self.assertEqual(row.balance_before, 0.0)
            self.assertEqual(row.balance_after, 1500.0)
            self.assertEqual(self._reload(User, uid).available_balance, 1500.0)

    def test_negative_balance_is_refused_and_unit_rolls_back(self):
        with self.app.app_context():
            uid = self._user("seller")
            self._fund(uid, "available", 100, reference="LEDGER-B")
            with self.assertRaises(PreconditionFailed) as ctx:
                with transaction_scope("test_overdraw"):
                    apply_balance_change(
                        uid, "pending", 50, txn_type=TxnType.ESCROW, reference="LEDGER-B-ESCROW", description="x"
                    )
                    apply_balance_change(
                        uid, "available", -500, txn_type=TxnType.DEBIT, reference="LEDGER-B-DEBIT", description="x"
                    )
            self.assertEqual(ctx.exception.code, "INSUFFICIENT_BALANCE")
            user = self._reload(User, uid)
            self.assertEqual(user.available_balance, 100.0)
            self.assertEqual(user.pending_balance, 0.0)
            self.assertIsNone(Transaction.query.filter_by(user_id=uid, reference="LEDGER-B-ESCROW").first())

    def test_duplicate_reference_is_refused(self):
        with self.app.app_context():
            uid = self._user("seller")
            self._fund(uid, "available", 100, reference="LEDGER-C")
            with self.assertRaises(PreconditionFailed) as ctx:
                self._fund(uid, "available", 100, reference="LEDGER-C")
            self.assertEqual(ctx.exception.code, "DUPLICATE_LEDGER_REFERENCE")
            self.assertEqual(self._reload(User, uid).available_balance, 100.0)

    def test_sign_must_match_entry_type(self):
        with self.app.app_context():
            uid = self._user("seller")
            with self.assertRaises(ValueError):
                with transaction_scope("test_sign"):
                    apply_balance_change(uid, "available", -10, txn_type=TxnType.CREDIT, reference="LEDGER-D", description="x")

    def test_memo_entry_moves_no_balance(self):
        with self.app.app_context():
            uid = self._user("buyer")
            with transaction_scope("test_memo"):
                record_memo_entry(uid, 5000, txn_type=TxnType.DEBIT, reference="LEDGER-E", description="gateway payment")
            row = Transaction.query.filter_by(user_id=uid, reference="LEDGER-E").one()
            self.assertEqual(row.balance_field, "memo")
            self.assertEqual(row.balance_before, row.balance_after)
            user = self._reload(User, uid)
            self.assertEqual((user.available_balance, user.pending_balance), (0.0, 0.0))

    def test_release_pending_pairs_debit_and_credit(self):
        with self.app.app_context():
            uid = self._user("rider")
            self._fund(uid, "pending", 560, reference="LEDGER-F-ESCROW")
            with transaction_scope("test_release"):
                release_pending(uid, 560, reference_prefix="LEDGER-F", description="delivery")
            user = self._reload(User, uid)
            self.assertEqual(user.pending_balance, 0.0)
            self.assertEqual(user.available_balance, 560.0)
            refs = {t.reference: t.type for t in Transaction.query.filter_by(user_id=uid).all()}
            self.assertEqual(refs["LEDGER-F-ESCROW-RELEASE"], TxnType.DEBIT)
            self.assertEqual(refs["LEDGER-F-RELEASE"], TxnType.CREDIT)


class ReconciliationTestCase(MarketTestCase):
    def test_clean_ledger_has_no_drift(self):
        with self.app.app_context():
            uid = self._user("seller")
            self._fund(uid, "pending", 700)
            with transaction_scope("test_recon"):
                release_pending(uid, 300, reference_prefix="RECON-A", description="partial")
            summary = recompute_balances(user_id=uid)
            self.assertEqual((summary["user_count"], summary["drift_count"]), (1, 0))
            self.assertEqual(summary["scope"], f"wallet:{uid}")

    def test_direct_balance_edit_is_reported(self):
        with self.app.app_context():
            uid = self._user("seller")
            self._fund(uid, "available", 200)
            user = db.session.get(User, uid)
            user.available_balance = 950.0
            db.session.commit()
            summary = recompute_balances()
            drift = [d for d in summary["drift_items"] if d["user_id"] == uid]
            self.assertEqual(len(drift), 1)
            self.assertEqual(drift[0]["balance_field"], "available")
            self.assertEqual(drift[0]["drift"], 750.0)
            report = persist_report(summary)
            self.assertGreaterEqual(report.drift_count, 1)
            stored = report.to_dict()
            self.assertFalse(stored["clean"])
            self.assertGreaterEqual(stored["total_drift"], 750.0)
            self.assertIn(uid, [d["user_id"] for d in stored["drift_items"]])

            admin_id = self._user("admin")
        res = self.client.get("/api/admin/reconciliation?persist=1", headers=self._auth(admin_id))
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertGreaterEqual(body["drift_count"], 1)
        self.assertIn("report_id", body)


if __name__ == "__main__":
    unittest.main()
