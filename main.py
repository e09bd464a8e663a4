import datetime
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from relaychat.settings import settings
from relaychat.logging_config import get_logger, setup_logging

setup_logging(log_level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)

from relaychat.api import router as api_router
from relaychat.database import engine
from relaychat.deps import get_db
from relaychat.errors import ChatError
from relaychat.models import Base
from relaychat.services import redis_manager

logger = get_logger(__name__)

async def create_db_and_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

app = FastAPI(title="Relaychat API", version="1.0.0")

@app.on_event("startup")
async def on_startup():
    await create_db_and_tables()
    logger.info("Application started")

@app.on_event("shutdown")
async def on_shutdown():
    await redis_manager.close()
    logger.info("Application shutdown")

@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")

@app.get("/")
def read_root():
    return {"message": "Welcome to the Chat API"}

@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        db_status = "OK"
    except Exception as e:
        db_status = f"ERROR: {e}"

    try:
        await redis_manager.ping()
        redis_status = "OK"
    except Exception as e:
        redis_status = f"ERROR: {e}"

    return {
        "status": "OK" if db_status == "OK" and redis_status == "OK" else "ERROR",
        "database": db_status,
        "redis": redis_status,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
