import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tokenapi.config import settings
from tokenapi.database.session import get_db
from tokenapi.schemas.health import HealthCheckResponse
from tokenapi.utils.date_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
def health_check(db: Session = Depends(get_db)) -> HealthCheckResponse:
    """Health check endpoint."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {str(e)}")
        return HealthCheckResponse(
            status="degraded",
            database="unavailable",
            environment=settings.ENVIRONMENT,
            checked_at=utc_now(),
            error=str(e),
        )
    return HealthCheckResponse(
        database="ok", environment=settings.ENVIRONMENT, checked_at=utc_now()
    )
