"""
对账器：定时执行一轮完整对账。

每轮：
1. 从节点获取区块高度，写入 HeightTracker（节点不可用时沿用已知高度）
2. 拒绝过期的 New 订单
3. 超时未上链的交易：钱包已确认的跳过，其余先在钱包取消，再标记为 Rejected
4. 逐笔刷新未终结交易的钱包状态（高度、承诺、实际转账费），交给状态机推进
5. 重试到期的商户通知

单笔交易失败只记录日志，不影响其他交易。
"""

import logging
from datetime import datetime, timedelta

from app.models.schemas import OrderStatus, Transaction, TransactionType
from app.services.callback_service import CallbackService
from app.services.errors import WalletUnavailable
from app.services.fee_calculator import Fees
from app.services.height_tracker import HeightTracker
from app.services.status_engine import StatusEngine
from app.services.transaction_service import TransactionService
from app.services.wallet_client import WalletClient

logger = logging.getLogger(__name__)

# 被拒绝的收款在此时间内仍检查是否上链（到账晚于拒绝需要退款）
LATE_PAYMENT_WINDOW = timedelta(hours=24)


class Reconciler:
    """对账器：组装 HeightTracker、StatusEngine、CallbackService 和钱包客户端。"""

    def __init__(
        self,
        wallet: WalletClient,
        tracker: HeightTracker | None = None,
        notifier: CallbackService | None = None,
    ):
        self.wallet = wallet
        self.tracker = tracker or HeightTracker()
        self.notifier = notifier or CallbackService()
        self.engine = StatusEngine(self.tracker, self.notifier)
        self.transactions = TransactionService()

    def refresh_height(self) -> int:
        try:
            self.tracker.update(self.wallet.get_chain_height())
        except WalletUnavailable as e:
            logger.warning("获取区块高度失败，沿用已知高度: %s", e)
        return self.tracker.read()

    def cancel_expired(self) -> int:
        """取消并拒绝超时交易，返回拒绝数量。钱包不可用时本轮跳过，下轮重试。"""
        rejected = 0
        for tx in self.engine.expired_transactions():
            try:
                info = self.wallet.get_transaction(tx.slate_id)
                if info["confirmed"]:
                    # 已出块只是还没有高度，交给本轮刷新
                    logger.info("超时交易已在钱包确认，不取消 (slate_id=%s)", tx.slate_id)
                    continue
                if not info["cancelled"]:
                    self.wallet.cancel_tx(tx.slate_id)
            except WalletUnavailable as e:
                logger.warning("取消超时交易失败 (slate_id=%s): %s", tx.slate_id, e)
                continue
            try:
                if self.engine.transition(tx, OrderStatus.REJECTED):
                    rejected += 1
                    if tx.transaction_type == TransactionType.REFUND:
                        logger.warning(
                            "退款交易超时被拒绝，需要人工处理: order_id=%s, slate_id=%s",
                            tx.order_id, tx.slate_id,
                        )
            except Exception as e:
                logger.error("拒绝超时交易异常 (slate_id=%s): %s", tx.slate_id, e)
        return rejected

    def refresh_transaction(self, tx: Transaction, current_height: int) -> OrderStatus:
        """用钱包回报更新一笔交易，再交给状态机评估。"""
        info = self.wallet.get_transaction(tx.slate_id)

        if info["cancelled"] and tx.status in (OrderStatus.PENDING, OrderStatus.INITIALIZED):
            self.engine.transition(tx, OrderStatus.REJECTED)
            return self.transactions.get(tx.slate_id).status

        height = info["height"]
        if height is None and info["confirmed"] and tx.height is None and current_height > 0:
            # 钱包已确认但查不到出块高度：从当前高度起算，确认数只会偏少
            height = current_height
            logger.warning(
                "钱包已确认的交易没有出块高度，按当前高度记录: slate_id=%s, height=%d",
                tx.slate_id, height,
            )

        fees = Fees(tx.platform_fee, tx.transfer_fee).realize(info["fee"])
        self.transactions.record_chain_info(
            tx.slate_id,
            height=height,
            commitment=info["commitment"],
            realized_transfer_fee=fees.realized_transfer_fee,
            num_inputs=info["num_inputs"] or None,
            num_outputs=info["num_outputs"] or None,
        )

        if tx.status == OrderStatus.INITIALIZED and height is None:
            # 钱包已广播但尚未出块
            self.engine.transition(tx, OrderStatus.PENDING)

        return self.engine.evaluate(tx.slate_id, current_height)

    def late_payment_candidates(self, now: datetime | None = None) -> list[Transaction]:
        since = (now or datetime.now()) - LATE_PAYMENT_WINDOW
        return [
            tx for tx in self.transactions.list_by_status(OrderStatus.REJECTED)
            if tx.transaction_type == TransactionType.PAYMENT
            and tx.height is None
            and tx.updated_at and tx.updated_at >= since
        ]

    def run_pass(self) -> dict:
        """
        执行一轮对账。

        Returns:
            {"height": int, "expired_orders": int, "expired_transactions": int,
             "evaluated": int, "failed": int, "notified": int}
        """
        height = self.refresh_height()
        expired_orders = self.engine.reject_expired_orders()
        expired_txs = self.cancel_expired()

        evaluated = failed = 0
        for tx in self.transactions.list_open() + self.late_payment_candidates():
            try:
                self.refresh_transaction(tx, height)
                evaluated += 1
            except WalletUnavailable as e:
                failed += 1
                logger.warning("钱包查询失败，下轮重试 (slate_id=%s): %s", tx.slate_id, e)
            except Exception as e:
                failed += 1
                logger.error("交易对账异常 (slate_id=%s): %s", tx.slate_id, e)

        retried = self.notifier.retry_pending()
        result = {
            "height": height,
            "expired_orders": len(expired_orders),
            "expired_transactions": expired_txs,
            "evaluated": evaluated,
            "failed": failed,
            "notified": retried["sent"],
        }
        logger.info("对账完成: %s", result)
        return result
