from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from api.src.db.database import get_db
from api.src.services.queue import RunQueue, get_run_queue

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "pipewright-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": str(e)}

@router.get("/health/redis")
async def redis_health_check(queue: RunQueue = Depends(get_run_queue)):
    try:
        await queue.ping()
        return {"status": "healthy", "redis": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "redis": str(e)}

@router.get("/health/queue")
async def queue_health_check(queue: RunQueue = Depends(get_run_queue)):
    try:
        return {
            "status": "healthy",
            "queue_length": await queue.length(),
        }
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
