from __future__ import annotations

import argparse
import json
import os
import sys


def _bootstrap_app():
    from campusmarket import create_app

    app = create_app()
    app.app_context().push()
    return app


def _print_table(summary: dict) -> None:
    print(f"users={summary['user_count']} drift={summary['drift_count']} total_drift={summary['total_drift']}")
    for item in summary["drift_items"]:
        print(
            f"  user={item['user_id']:<8} field={item['balance_field']:<10} "
            f"stored={item['stored_balance']:>12.2f} ledger={item['computed_balance']:>12.2f} "
            f"drift={item['drift']:>10.2f}"
        )


def main():
    parser = argparse.ArgumentParser(description="Replay the wallet ledger and report balance drift.")
    parser.add_argument("--tolerance", type=float, default=0.01, help="Largest drift treated as rounding noise.")
    parser.add_argument("--user-id", type=int, default=None, help="Replay a single wallet.")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    parser.add_argument("--json", action="store_true", help="Print the full summary as JSON.")
    args = parser.parse_args()

    _bootstrap_app()
    from campusmarket.services.reconciliation_service import persist_report, recompute_balances

    summary = recompute_balances(tolerance=args.tolerance, user_id=args.user_id)
    if args.persist:
        summary["report_id"] = int(persist_report(summary).id)

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        _print_table(summary)
    # Non-zero exit lets a scheduler page on drift.
    return 0 if int(summary.get("drift_count") or 0) == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
