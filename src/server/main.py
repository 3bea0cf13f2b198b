"""
FastAPI 应用入口点。
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from src.server.config import config
from src.server.logging_setup import setup_logging
from src.server.pki.router import router as pki_router
from src.server.pki.services import get_backend


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.log_level)
    logger.info(f"config: {config.safe_dump()}")
    # 启动时即构造后端，配置错误尽早暴露
    backend = get_backend()
    yield
    close = getattr(backend.ca_client, "close", None)
    if close is not None:
        close()
    logger.info("应用关闭")


app = FastAPI(title="PKI Lease Service", lifespan=lifespan)

# 包含证书签发服务的路由
app.include_router(pki_router, prefix="/v1")
