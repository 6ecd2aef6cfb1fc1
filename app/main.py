"""
GrinPay 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
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

RECONCILE_INTERVAL = int(os.getenv("RECONCILE_INTERVAL", "30"))
NOTIFY_RETRY_INTERVAL = int(os.getenv("NOTIFY_RETRY_INTERVAL", "10"))
RATES_INTERVAL = int(os.getenv("RATES_INTERVAL", "300"))


# ── 后台任务 ──────────────────────────────────────────────

async def _reconcile_task() -> None:
    """定期执行一轮对账（高度、过期、交易推进、通知重试）。"""
    from app.services.reconciler import Reconciler
    from app.services.wallet_client import WalletClient

    reconciler = Reconciler(WalletClient())
    while True:
        try:
            await asyncio.to_thread(reconciler.run_pass)
        except Exception as e:
            logger.error("对账任务异常: %s", e)
        await asyncio.sleep(RECONCILE_INTERVAL)


async def _notify_retry_task() -> None:
    """对账间隔之间补发到期的商户通知。"""
    from app.services.callback_service import CallbackService

    svc = CallbackService()
    while True:
        try:
            result = await asyncio.to_thread(svc.retry_pending)
            if result["sent"] or result["failed"]:
                logger.info("通知重试完成: %s", result)
        except Exception as e:
            logger.error("通知重试任务异常: %s", e)
        await asyncio.sleep(NOTIFY_RETRY_INTERVAL)


async def _rates_task() -> None:
    """定期拉取 GRIN 汇率。"""
    from app.services.order_service import fetch_rates

    while True:
        try:
            await asyncio.to_thread(fetch_rates)
        except Exception as e:
            logger.warning("汇率更新失败: %s", e)
        await asyncio.sleep(RATES_INTERVAL)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from app.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_reconcile_task()))
        tasks.append(asyncio.create_task(_notify_retry_task()))
        tasks.append(asyncio.create_task(_rates_task()))
        logger.info("后台任务已启动：对账、通知重试、汇率更新")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="GrinPay", description="Grin 收款与对账服务", lifespan=lifespan)

# ── 路由注册 ──────────────────────────────────────────────

from app.routes.merchant import router as merchant_router
from app.routes.payment import router as payment_router

app.include_router(payment_router)
app.include_router(merchant_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    from app.services.height_tracker import HeightTracker

    return {"status": "ok", "height": HeightTracker().read()}
