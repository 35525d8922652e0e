"""
Dependency wiring for the control plane.

The services are built once per application (``build_services``) and kept on
``app.state``; endpoints receive them through ``Depends``. Tests swap them via
``app.dependency_overrides[get_services]``.
"""
from typing import Callable, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from flagops.config import settings
from flagops.crud.base import FlagBackend, TenantDirectory
from flagops.crud.crud_feature_flag import SqlAlchemyFlagBackend
from flagops.crud.crud_tenant import SqlAlchemyTenantDirectory
from flagops.services.admin_operations import FlagAdminService
from flagops.services.evaluation_log import (
    EvaluationLogQueue,
    EvaluationSink,
    LoggingEvaluationSink,
    SqlAlchemyEvaluationSink,
)
from flagops.services.feature_flags import FlagQueryService
from flagops.services.resolution import ResolutionEngine


DEFAULT_ACTOR = "system"


class FlagServices:
    """Everything one application instance shares."""

    def __init__(
        self,
        backend: FlagBackend,
        tenants: TenantDirectory,
        evaluation_log: Optional[EvaluationLogQueue] = None,
        engine: Optional[ResolutionEngine] = None,
        environment: Optional[str] = None,
    ):
        self.backend = backend
        self.tenants = tenants
        self.evaluation_log = evaluation_log
        self.engine = engine or ResolutionEngine(evaluation_log=evaluation_log)
        self.admin = FlagAdminService(backend, tenants)
        self.query = FlagQueryService(backend, tenants, self.engine, environment=environment)

    def start(self) -> None:
        if self.evaluation_log is not None:
            self.evaluation_log.start()

    def stop(self) -> None:
        if self.evaluation_log is not None:
            self.evaluation_log.stop()


def build_services(session_factory: Optional[Callable[[], Session]] = None) -> FlagServices:
    if session_factory is None:
        from flagops.db.session import SessionLocal
        session_factory = SessionLocal

    evaluation_log = None
    if settings.EVAL_LOG_ENABLED:
        sink: EvaluationSink
        if settings.EVAL_LOG_SINK == "db":
            sink = SqlAlchemyEvaluationSink(session_factory)
        else:
            sink = LoggingEvaluationSink()
        evaluation_log = EvaluationLogQueue(
            sink,
            max_size=settings.EVAL_LOG_QUEUE_SIZE,
            batch_size=settings.EVAL_LOG_BATCH_SIZE,
        )

    return FlagServices(
        backend=SqlAlchemyFlagBackend(session_factory),
        tenants=SqlAlchemyTenantDirectory(session_factory),
        evaluation_log=evaluation_log,
    )


def get_services(request: Request) -> FlagServices:
    services = getattr(request.app.state, "flag_services", None)
    if services is None:
        services = request.app.state.flag_services = build_services()
        services.start()
    return services


def get_admin_service(services: FlagServices = Depends(get_services)) -> FlagAdminService:
    return services.admin


def get_query_service(services: FlagServices = Depends(get_services)) -> FlagQueryService:
    return services.query


def get_actor(x_actor: Optional[str] = Header(None)) -> str:
    """Acting admin identity. Not authenticated here."""
    return (x_actor or "").strip() or DEFAULT_ACTOR
