"""Health check endpoint."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from kalypso_api import __version__
from kalypso_api.db.session import engine

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Returns "up" if a trivial query succeeds, otherwise a short error string."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except SQLAlchemyError as e:
        logger.error("HEALTH_DATABASE_DOWN", extra={"error_type": type(e).__name__})
        return f"down: {str(e)[:50]}"


@router.get("/health", response_model=HealthResponse)
async def health(response: Response) -> HealthResponse:
    services = {"database": check_database()}
    healthy = all(value == "up" for value in services.values())
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(status="healthy" if healthy else "degraded", version=__version__, services=services)
