from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from farmroute import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Check fee rows and payouts of delivered orders against their subtotals.")
    parser.add_argument("--limit", type=int, default=0, help="Only check the first N delivered orders.")
    args = parser.parse_args()

    _bootstrap_app()
    from farmroute.services.payout_service import reconcile_ledger

    report = reconcile_ledger(limit=args.limit or None)
    print(json.dumps(report, indent=2))
    return 0 if report["ok"] else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
