"""
Runs one reconciliation sweep over stale PENDING payments.

Meant for cron when the in-process periodic sweep is disabled
(RECONCILE_INTERVAL_SECONDS=0). Exits non-zero if any verification failed.
"""
import argparse
import asyncio
import os
import sys

import httpx

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from payments import models  # noqa: E402
from payments.config import get_settings  # noqa: E402
from payments.database import SessionLocal, engine  # noqa: E402
from payments.gateways.client import build_gateway_clients  # noqa: E402
from payments.services.reconciliation import Reconciler  # noqa: E402
from payments.utils.logging import configure_logging  # noqa: E402


async def run(limit: int) -> int:
    settings = get_settings()
    models.Base.metadata.create_all(bind=engine)

    http = None
    if settings.GATEWAY_MODE == "live":
        http = httpx.AsyncClient(base_url=settings.WOMPI_BASE_URL, timeout=settings.GATEWAY_TIMEOUT_SECONDS)

    db = SessionLocal()
    try:
        gateways = build_gateway_clients(settings, SessionLocal, http)
        result = await Reconciler(db, gateways, settings).sweep(limit=limit)
    finally:
        db.close()
        if http is not None:
            await http.aclose()

    print(
        f"checked={result.checked} approved={result.approved} failed={result.failed} "
        f"expired={result.expired} still_pending={result.still_pending} "
        f"refunds_checked={result.refunds_checked} refunds_approved={result.refunds_approved} "
        f"refunds_rejected={result.refunds_rejected} errors={len(result.errors)}"
    )
    for error in result.errors:
        print(f"  {error['transaction_id']}: {error['error']}")
    return 1 if result.errors else 0


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=500, help="maximum transactions per sweep")
    args = parser.parse_args()

    configure_logging(get_settings())
    sys.exit(asyncio.run(run(args.limit)))


if __name__ == "__main__":
    main()
