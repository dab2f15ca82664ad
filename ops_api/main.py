"""
FastAPI приложение для ops API (только чтение)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ops_api.health import router as health_router
from ops_api.partitions import router as partitions_router
from shared.config import DATA_DIR, LOG_FORMAT, LOG_LEVEL, ensure_data_dirs
from shared.database import close_db
from shared.redis_client import close_redis

ensure_data_dirs()

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "ops_api.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager для FastAPI
    """
    logger.info("🚀 Starting ops API...")

    yield

    logger.info("🛑 Shutting down ops API...")
    await close_db()
    await close_redis()
    logger.info("✅ Ops API stopped")


# Создание FastAPI приложения
app = FastAPI(
    title="UniFarm Reward Engine Ops API",
    description="Health, partitions and reward cycle reports",
    version="1.0.0",
    lifespan=lifespan
)


# Подключение роутеров
app.include_router(health_router)
app.include_router(partitions_router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик ошибок
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


def run():
    import uvicorn
    from shared.config import API_HOST, API_PORT

    uvicorn.run(
        "ops_api.main:app",
        host=API_HOST,
        port=API_PORT,
        reload=False,
        log_level=LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    run()
