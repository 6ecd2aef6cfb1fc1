"""
收款服务：接收买家 slate，保存收款交易并将订单推进到 Pending。
"""

import logging
from datetime import datetime

from app.models.schemas import OrderStatus, Transaction, TransactionType
from app.services.errors import ValidationError
from app.services.fee_calculator import FeeSchedule, calculate_fees
from app.services.order_service import OrderService
from app.services.platform_config import get_fee_schedule
from app.services.status_engine import StatusEngine
from app.services.wallet_client import WalletClient

logger = logging.getLogger(__name__)

# 允许的最大多付金额（纳格林）
MAX_OVERPAY = 1_000_000


def is_invalid_amount(grin_amount: int, slate_amount: int) -> bool:
    """少付，或多付超过 MAX_OVERPAY，都视为金额不符。"""
    return slate_amount < grin_amount or slate_amount - grin_amount > MAX_OVERPAY


class PaymentService:
    """收款服务。"""

    def __init__(self, engine: StatusEngine, wallet: WalletClient):
        self.engine = engine
        self.wallet = wallet
        self.orders = OrderService()

    def accept_slate(self, order_id: str, slate: dict) -> dict:
        """
        处理买家提交的 slate：
        1. 校验订单状态（New、未过期）和 slate 金额
        2. 交给钱包签收，得到承诺、手续费、消息
        3. 同一事务内保存收款交易（Pending）并推进订单 New → Pending
        4. 立即按当前高度评估一次（交易可能已带高度）

        Returns:
            钱包签收后的 slate，返还给买家钱包定稿。

        Raises:
            NotFoundError: 订单不存在。
            ValidationError: 订单状态不对、已过期或金额不符。
            WalletUnavailable: 钱包不可用。
            ConflictError: 并发提交或承诺已被占用。
        """
        order = self.orders.get_order(order_id)
        if order.order_type != TransactionType.PAYMENT:
            raise ValidationError("该订单不接受付款")
        if order.status != OrderStatus.NEW:
            raise ValidationError(f"订单状态为 {order.status.value}，不能付款")
        if order.expires_at and order.expires_at < datetime.now():
            raise ValidationError("订单已过期")

        try:
            slate_amount = int(slate.get("amount"))
        except (TypeError, ValueError):
            raise ValidationError("slate 缺少金额")
        if is_invalid_amount(order.grin_amount, slate_amount):
            raise ValidationError(
                f"金额不符: 应付 {order.grin_amount}, 实付 {slate_amount}"
            )

        received = self.wallet.receive_slate(slate)

        fees = calculate_fees(
            order.grin_amount,
            TransactionType.PAYMENT,
            FeeSchedule.from_dict(get_fee_schedule()),
        )
        tx = Transaction(
            slate_id=received["slate_id"],
            order_id=order.id,
            status=OrderStatus.PENDING,
            transaction_type=TransactionType.PAYMENT,
            amount=slate_amount,
            confirmations_required=order.confirmations,
            platform_fee=fees.platform_fee,
            transfer_fee=fees.transfer_fee,
            num_inputs=received["num_inputs"],
            num_outputs=received["num_outputs"],
            commitment=received["commitment"],
            messages=received["messages"],
        )
        self.engine.start_payment(order, tx, received["messages"])
        logger.info(
            "收到付款 slate: order_id=%s, slate_id=%s, amount=%d",
            order.id, tx.slate_id, slate_amount,
        )

        self.engine.evaluate(tx.slate_id)
        return received["slate"]
