"""
买家付款接口路由（公开，无需认证）：

- GET  /v1/orders/{order_id}        订单状态轮询
- POST /v1/orders/{order_id}/slate  提交钱包 slate，返回签收后的 slate
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.models.schemas import Order, TransactionType, format_time
from app.services.callback_service import CallbackService
from app.services.errors import NotFoundError, PaymentError
from app.services.height_tracker import HeightTracker
from app.services.order_service import OrderService
from app.services.payment_service import PaymentService
from app.services.status_engine import StatusEngine
from app.services.transaction_service import TransactionService
from app.services.wallet_client import WalletClient

logger = logging.getLogger(__name__)

router = APIRouter()


def order_to_dict(order: Order) -> dict:
    """订单的对外字段（不含通知内部状态）。"""
    return {
        "id": order.id,
        "external_id": order.external_id,
        "order_type": order.order_type.value,
        "status": order.status.value,
        "grin_amount": order.grin_amount,
        "amount": order.amount.to_dict(),
        "confirmations": order.confirmations,
        "message": order.message,
        "redirect_url": order.redirect_url,
        "reported": order.reported,
        "expires_at": format_time(order.expires_at) if order.expires_at else None,
        "created_at": format_time(order.created_at) if order.created_at else None,
    }


def current_confirmations(order_id: str) -> int:
    """收款交易当前的确认数，未上链为 0。"""
    height = HeightTracker().read()
    for tx in TransactionService().list_for_order(order_id):
        if tx.transaction_type == TransactionType.PAYMENT and tx.height is not None:
            return tx.current_confirmations(height)
    return 0


@router.get("/v1/orders/{order_id}")
async def get_order_status(order_id: str):
    """订单状态轮询接口，仅返回数据库中的当前状态。"""
    try:
        order = OrderService().get_order(order_id)
    except NotFoundError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})

    data = order_to_dict(order)
    data["current_confirmations"] = current_confirmations(order.id)
    return JSONResponse(content={"code": 1, "order": data})


@router.post("/v1/orders/{order_id}/slate")
def receive_slate(order_id: str, slate: dict):
    """
    买家钱包通过 HTTP 发送 slate。

    成功时直接返回签收后的 slate（钱包要求原始 slate 格式），
    失败时返回 400 和错误信息，买家钱包会中止付款。
    """
    service = PaymentService(
        StatusEngine(HeightTracker(), CallbackService()), WalletClient()
    )
    try:
        signed = service.accept_slate(order_id, slate)
    except PaymentError as e:
        logger.warning("拒绝 slate (order_id=%s): %s", order_id, e)
        return JSONResponse(status_code=400, content={"code": -1, "msg": str(e)})
    return JSONResponse(content=signed)
