"""
商户接口路由：注册、下单、订单查询、提现、退款。

除注册外均需 X-Merchant-Token header；提现额外校验商户密码。
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.models.schemas import format_time
from app.routes.payment import current_confirmations, order_to_dict
from app.services.auth import get_current_merchant
from app.services.callback_service import CallbackService
from app.services.errors import PaymentError
from app.services.merchant_service import MerchantService
from app.services.order_service import OrderService
from app.services.payout_service import PayoutService
from app.services.transaction_service import TransactionService
from app.services.wallet_client import WalletClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/merchants")


class CreateMerchantRequest(BaseModel):
    email: str
    password: str
    wallet_url: str | None = None
    callback_url: str | None = None


class UpdateEndpointsRequest(BaseModel):
    wallet_url: str | None = None
    callback_url: str | None = None


class CreateOrderRequest(BaseModel):
    external_id: str
    amount: dict
    confirmations: int = 0
    email: str | None = None
    message: str | None = None
    redirect_url: str | None = None
    expires_in: int | None = None


class PayoutRequest(BaseModel):
    amount: int
    password: str


class RefundRequest(BaseModel):
    destination: str


def _error(e: Exception) -> JSONResponse:
    return JSONResponse(content={"code": -1, "msg": str(e)})


# ── 商户 ──────────────────────────────────────────────────


@router.post("")
async def create_merchant(body: CreateMerchantRequest):
    try:
        merchant = MerchantService().create_merchant(
            body.email, body.password, body.wallet_url, body.callback_url
        )
    except PaymentError as e:
        return _error(e)
    return JSONResponse(content={
        "code": 1,
        "id": merchant.id,
        "token": merchant.token,
    })


@router.get("/{merchant_id}")
async def get_merchant(merchant: dict = Depends(get_current_merchant)):
    return JSONResponse(content={
        "code": 1,
        "id": merchant["id"],
        "email": merchant["email"],
        "wallet_url": merchant["wallet_url"],
        "callback_url": merchant["callback_url"],
        "balance": merchant["balance"],
    })


@router.put("/{merchant_id}/endpoints")
async def update_endpoints(
    body: UpdateEndpointsRequest, merchant: dict = Depends(get_current_merchant)
):
    try:
        MerchantService().update_endpoints(
            merchant["id"], body.wallet_url, body.callback_url
        )
    except PaymentError as e:
        return _error(e)
    return JSONResponse(content={"code": 1, "msg": "更新成功"})


# ── 订单 ──────────────────────────────────────────────────


@router.post("/{merchant_id}/orders")
async def create_order(
    body: CreateOrderRequest, merchant: dict = Depends(get_current_merchant)
):
    params = body.model_dump()
    params["merchant_id"] = merchant["id"]
    try:
        order = OrderService().create_order(params)
    except PaymentError as e:
        return _error(e)
    return JSONResponse(content={"code": 1, "order": order_to_dict(order)})


@router.get("/{merchant_id}/orders")
async def list_orders(
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    merchant: dict = Depends(get_current_merchant),
):
    orders = OrderService().list_orders(merchant["id"], offset, limit)
    return JSONResponse(content={
        "code": 1,
        "orders": [order_to_dict(o) for o in orders],
    })


@router.get("/{merchant_id}/orders/{external_id}")
async def get_order(external_id: str, merchant: dict = Depends(get_current_merchant)):
    try:
        order = OrderService().get_order_by_external_id(merchant["id"], external_id)
    except PaymentError as e:
        return _error(e)

    data = order_to_dict(order)
    data["current_confirmations"] = current_confirmations(order.id)
    data["transactions"] = [
        {
            "slate_id": tx.slate_id,
            "transaction_type": tx.transaction_type.value,
            "status": tx.status.value,
            "amount": tx.amount,
            "platform_fee": tx.platform_fee,
            "transfer_fee": tx.transfer_fee,
            "realized_transfer_fee": tx.realized_transfer_fee,
            "height": tx.height,
            "commitment": tx.commitment,
        }
        for tx in TransactionService().list_for_order(order.id)
    ]
    return JSONResponse(content={"code": 1, "order": data})


@router.get("/{merchant_id}/orders/{external_id}/callbacks")
async def get_callback_logs(
    external_id: str, merchant: dict = Depends(get_current_merchant)
):
    try:
        order = OrderService().get_order_by_external_id(merchant["id"], external_id)
    except PaymentError as e:
        return _error(e)

    logs = CallbackService().get_callback_logs(order.id)
    return JSONResponse(content={
        "code": 1,
        "logs": [
            {
                "attempt": log.attempt,
                "url": log.url,
                "http_status": log.http_status,
                "response_body": log.response_body,
                "created_at": format_time(log.created_at) if log.created_at else None,
            }
            for log in logs
        ],
    })


@router.get("/{merchant_id}/callbacks/failed")
async def list_failed_callbacks(merchant: dict = Depends(get_current_merchant)):
    """超过最大重试次数、等待人工处理的通知。"""
    orders = CallbackService().list_failed_notifications(merchant["id"])
    return JSONResponse(content={
        "code": 1,
        "orders": [
            {**order_to_dict(order), "report_attempts": order.report_attempts}
            for order in orders
        ],
    })


@router.post("/{merchant_id}/orders/{external_id}/callbacks/requeue")
async def requeue_callback(
    external_id: str, merchant: dict = Depends(get_current_merchant)
):
    try:
        order = OrderService().get_order_by_external_id(merchant["id"], external_id)
    except PaymentError as e:
        return _error(e)

    if not CallbackService().requeue(order.id):
        return JSONResponse(content={"code": -1, "msg": "该订单的通知未处于失败状态"})
    logger.info("通知重新排队: merchant_id=%s, order_id=%s", merchant["id"], order.id)
    return JSONResponse(content={"code": 1, "msg": "已重新排队"})


# ── 提现 / 退款 ───────────────────────────────────────────


@router.post("/{merchant_id}/payouts")
def create_payout(body: PayoutRequest, merchant: dict = Depends(get_current_merchant)):
    merchants = MerchantService()
    if not merchants.verify_merchant_password(merchant["id"], body.password):
        return JSONResponse(content={"code": -1, "msg": "密码错误"})

    try:
        tx = PayoutService(WalletClient()).initiate_payout(merchant["id"], body.amount)
    except PaymentError as e:
        return _error(e)

    logger.info("商户提现: merchant_id=%s, slate_id=%s", merchant["id"], tx.slate_id)
    return JSONResponse(content={
        "code": 1,
        "slate_id": tx.slate_id,
        "order_id": tx.order_id,
        "amount": tx.amount,
        "status": tx.status.value,
    })


@router.post("/{merchant_id}/orders/{external_id}/refund")
def create_refund(
    external_id: str,
    body: RefundRequest,
    merchant: dict = Depends(get_current_merchant),
):
    try:
        order = OrderService().get_order_by_external_id(merchant["id"], external_id)
        tx = PayoutService(WalletClient()).initiate_refund(order.id, body.destination)
    except PaymentError as e:
        return _error(e)

    return JSONResponse(content={
        "code": 1,
        "slate_id": tx.slate_id,
        "amount": tx.amount,
        "status": tx.status.value,
    })
