from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    try:
        from celery_app import celery

        _ = str(celery.conf.broker_url or "")
        missing = [
            name
            for name in (
                "farmroute.tasks.payout_tasks.process_pending_payouts",
                "farmroute.tasks.payout_tasks.retry_refund_instructions",
            )
            if name not in celery.tasks
        ]
        if missing:
            print(f"error: tasks not registered: {', '.join(missing)}", file=sys.stderr)
            return 1
        print("ok: celery_app:celery import succeeded")
        return 0
    except ImportError as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
