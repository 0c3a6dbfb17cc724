"""
结算服务入口：FastAPI 应用实例、路由注册与生命周期。
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库。"""
    from settlement.database import init_db

    init_db()
    logger.info("数据库初始化完成")
    yield


app = FastAPI(title="Settlement Ledger", description="订单结算与卖家资金账", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from settlement.routes.admin import router as admin_router
from settlement.routes.callbacks import router as callbacks_router
from settlement.routes.cart import router as cart_router
from settlement.routes.orders import router as orders_router
from settlement.routes.wallet import router as wallet_router

app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(wallet_router)
app.include_router(admin_router)
app.include_router(callbacks_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
