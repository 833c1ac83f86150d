"""Shared FastAPI dependencies: Bridge client, audit sink and service builders."""

from typing import Callable, Optional, TypeVar

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from kalypso_api.audit.sinks import AuditSink
from kalypso_api.bridge.client import BridgeClient
from kalypso_api.db.session import get_db
from kalypso_api.services.base import BridgeService

ServiceT = TypeVar("ServiceT", bound=BridgeService)


def get_bridge_client(request: Request) -> BridgeClient:
    """The process-wide client created in the app lifespan."""
    return request.app.state.bridge_client


def get_audit_sink(request: Request) -> Optional[AuditSink]:
    return getattr(request.app.state, "audit_sink", None)


def service_provider(cls: type[ServiceT]) -> Callable[..., ServiceT]:
    """Build a dependency that yields ``cls`` bound to this request's session."""

    def provide(
        client: BridgeClient = Depends(get_bridge_client),
        db: Session = Depends(get_db),
        audit: Optional[AuditSink] = Depends(get_audit_sink),
    ) -> ServiceT:
        return cls(client, db, audit=audit)

    provide.__name__ = f"provide_{cls.__name__}"
    return provide
