"""FastAPI dependencies. Services are built per request around the request's session."""
from typing import Dict

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from payments.config import Settings, get_settings
from payments.database import get_db
from payments.gateways.client import GatewayClient
from payments.services.orchestrator import PaymentOrchestrator
from payments.services.reconciliation import Reconciler
from payments.services.refunds import RefundManager
from payments.services.webhooks import WebhookProcessor


def get_gateway_clients(request: Request) -> Dict[str, GatewayClient]:
    return request.app.state.gateway_clients


def get_orchestrator(
    db: Session = Depends(get_db),
    gateways: Dict[str, GatewayClient] = Depends(get_gateway_clients),
    settings: Settings = Depends(get_settings),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateways, settings)


def get_webhook_processor(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookProcessor:
    return WebhookProcessor(db, settings)


def get_refund_manager(
    db: Session = Depends(get_db),
    gateways: Dict[str, GatewayClient] = Depends(get_gateway_clients),
) -> RefundManager:
    return RefundManager(db, gateways)


def get_reconciler(
    db: Session = Depends(get_db),
    gateways: Dict[str, GatewayClient] = Depends(get_gateway_clients),
    settings: Settings = Depends(get_settings),
) -> Reconciler:
    return Reconciler(db, gateways, settings)
