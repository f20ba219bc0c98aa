from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ecoticker.database import get_db
from ecoticker.errors import StorageError
from ecoticker.schemas import HealthResponse
from ecoticker.services.health import get_health

logger = structlog.get_logger()

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)):
    """Batch freshness: stale when no score snapshot exists for today's UTC date."""
    try:
        status = await db.run_sync(lambda s: get_health(s))
    except (StorageError, SQLAlchemyError) as e:
        # Never echo driver text here, whatever the environment
        logger.error("health: storage failure", error=str(e.__cause__ or e))
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    return status.to_dict()
