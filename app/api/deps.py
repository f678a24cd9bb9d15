"""FastAPI dependency wiring for the reconciliation services."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.database import get_session_factory
from app.services.carrier import CarrierClient, get_carrier_client
from app.services.gateway import RefundGateway, get_refund_gateway
from app.services.reconciler import Reconciler
from app.services.refunds import RefundOrchestrator
from app.services.stuck import StuckDetector
from app.services.transaction_log import TransactionLogger, get_transaction_logger


def get_refund_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: RefundGateway = Depends(get_refund_gateway),
    tx_log: TransactionLogger = Depends(get_transaction_logger),
) -> RefundOrchestrator:
    return RefundOrchestrator(session_factory, gateway, tx_log)


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    carrier: CarrierClient = Depends(get_carrier_client),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
    tx_log: TransactionLogger = Depends(get_transaction_logger),
) -> Reconciler:
    return Reconciler(session_factory, carrier, refunds, tx_log)


def get_stuck_detector(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> StuckDetector:
    return StuckDetector(session_factory, settings)
