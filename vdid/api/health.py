"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from vdid import __version__
from vdid.api.deps import get_services
from vdid.api.models import HealthResponse, VersionResponse
from vdid.config import ENVIRONMENT
from vdid.services import Services

log = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/healthz", response_model=HealthResponse)
def healthz(services: Services = Depends(get_services)) -> HealthResponse:
    """Health check endpoint.

    Returns service status and whether the database answers.
    """
    try:
        with services.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return HealthResponse(ok=True, database=True)
    except SQLAlchemyError as e:
        log.warning(f"Health check warning: {e}")
        return HealthResponse(ok=True, database=False)


@router.get("/version", response_model=VersionResponse)
def version() -> VersionResponse:
    return VersionResponse(version=__version__, environment=ENVIRONMENT)
