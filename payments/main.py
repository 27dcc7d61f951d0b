import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI

from payments import models
from payments.config import get_settings
from payments.database import SessionLocal, engine
from payments.gateways.client import build_gateway_clients
from payments.services.reconciliation import Reconciler
from payments.utils.logging import clear_context, configure_logging

logger = structlog.get_logger(__name__)


async def reconcile_periodically(app: FastAPI, interval_seconds: int):
    settings = get_settings()
    while True:
        await asyncio.sleep(interval_seconds)
        db = SessionLocal()
        try:
            await Reconciler(db, app.state.gateway_clients, settings).sweep()
        except Exception as e:
            logger.error("reconcile_task_failed", error=str(e))
        finally:
            db.close()
            clear_context()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    models.Base.metadata.create_all(bind=engine)

    http = None
    if settings.GATEWAY_MODE == "live":
        http = httpx.AsyncClient(base_url=settings.WOMPI_BASE_URL, timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    app.state.gateway_clients = build_gateway_clients(settings, SessionLocal, http)

    reconcile_task = None
    if settings.RECONCILE_INTERVAL_SECONDS > 0:
        reconcile_task = asyncio.create_task(reconcile_periodically(app, settings.RECONCILE_INTERVAL_SECONDS))

    logger.info("payments_started", environment=settings.ENVIRONMENT, gateway_mode=settings.GATEWAY_MODE)
    yield

    if reconcile_task is not None:
        reconcile_task.cancel()
    if http is not None:
        await http.aclose()


app = FastAPI(
    title="Storefront Payments API",
    description="Payment orchestration for the storefront checkout: Wompi charges, PSE, webhooks and refunds",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "storefront-payments"}


from payments.routers import payments as payment_routes, webhooks as webhook_routes  # noqa: E402
app.include_router(webhook_routes.router, prefix="/payments", tags=["webhooks"])
app.include_router(payment_routes.router, prefix="/payments", tags=["payments"])
