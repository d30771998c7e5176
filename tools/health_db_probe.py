import json
import sys

from sqlalchemy import inspect, text
from sqlalchemy.engine.url import make_url

from campusmarket import create_app
from campusmarket.extensions import db
from campusmarket.integrations.payments.factory import payment_health

CORE_TABLES = ("users", "orders", "transactions", "disputes", "notifications")


def _safe_uri(uri: str) -> str:
    if not uri:
        return "unknown"
    try:
        return make_url(uri).render_as_string(hide_password=True)
    except Exception:
        return "unknown"


def main() -> int:
    app = create_app()
    with app.app_context():
        print("database:", _safe_uri(app.config.get("SQLALCHEMY_DATABASE_URI") or ""))
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                present = set(inspect(conn).get_table_names())
        except Exception as e:
            msg = str(e)
            print("SELECT 1: fail", (msg[:300] + "...") if len(msg) > 300 else msg)
            return 1
        print("SELECT 1: success")
        missing = [t for t in CORE_TABLES if t not in present]
        print("tables:", "ok" if not missing else f"missing {', '.join(missing)} (run flask db upgrade)")
        print("payments:", json.dumps(payment_health(app.config)))
        return 0 if not missing else 2


if __name__ == "__main__":
    sys.exit(main())
