"""
Service wiring for the HTTP layer. Tests replace ``get_store`` and
``get_router`` through ``app.dependency_overrides``.
"""

from datetime import timedelta
from functools import lru_cache

from fastapi import Depends

from ..config import Settings, get_settings
from ..database import get_session_factory
from ..escalation.router import EscalationRouter, LoggingNotifier
from ..qc.westgard import QCStatisticsEngine
from ..services.pipeline import QCService, ResultVerificationService
from ..services.repository import SqlAlchemyStore


@lru_cache
def get_store() -> SqlAlchemyStore:
    return SqlAlchemyStore(get_session_factory())


@lru_cache
def get_router() -> EscalationRouter:
    settings = get_settings()
    return EscalationRouter(
        LoggingNotifier(),
        max_workers=settings.notification_workers,
        ack_timeout=timedelta(minutes=settings.critical_ack_timeout_minutes),
        dedup_window=timedelta(hours=settings.notification_dedup_hours),
    )


def get_result_service(
    store: SqlAlchemyStore = Depends(get_store),
    router: EscalationRouter = Depends(get_router),
    settings: Settings = Depends(get_settings),
) -> ResultVerificationService:
    return ResultVerificationService(
        store, router, default_tat=timedelta(minutes=settings.default_tat_minutes)
    )


def get_qc_service(
    store: SqlAlchemyStore = Depends(get_store),
    router: EscalationRouter = Depends(get_router),
    settings: Settings = Depends(get_settings),
) -> QCService:
    engine = QCStatisticsEngine(
        window_size=settings.qc_window_size,
        min_points_for_limits=settings.qc_min_points_for_limits,
    )
    return QCService(store, router, engine=engine)
