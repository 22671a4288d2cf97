from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from farmroute import create_app
from farmroute.extensions import db
from farmroute.models import Payout, PayoutStatus


def _safe_uri(uri: str) -> str:
    if not uri:
        return "unknown"
    try:
        return make_url(uri).render_as_string(hide_password=True)
    except ArgumentError:
        return "unknown"


def main():
    app = create_app()
    with app.app_context():
        print("SQLALCHEMY_DATABASE_URI:", _safe_uri(app.config.get("SQLALCHEMY_DATABASE_URI") or ""))
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            print("SELECT 1: success")
            print("pending payouts:", Payout.query.filter_by(status=PayoutStatus.PENDING).count())
        except SQLAlchemyError as e:
            print("SELECT 1: fail")
            msg = str(e)
            print("error:", (msg[:300] + "...") if len(msg) > 300 else msg)


if __name__ == "__main__":
    main()
