"""对账引擎异常定义。"""


class PaymentError(Exception):
    """支付服务异常基类。"""
    pass


class ValidationError(PaymentError):
    """请求参数无效或订单重复。"""
    pass


class NotFoundError(PaymentError):
    """订单 / 交易 / 商户不存在。"""
    pass


class ConflictError(PaymentError):
    """承诺（commitment）重复，或条件更新竞争失败。"""
    pass


class WalletUnavailable(PaymentError):
    """钱包或节点暂时不可用，下一轮对账重试。"""
    pass


class InsufficientBalance(PaymentError):
    """商户余额不足，提现被拒绝。"""
    pass


class NotificationFailed(PaymentError):
    """商户回调通知失败。"""

    def __init__(self, callback_url: str, error: str):
        self.callback_url = callback_url
        self.error = error
        super().__init__(f"回调 {callback_url} 失败: {error}")


class InvalidTransition(ConflictError):
    """状态表不允许的迁移，通常是读到的旧状态已过期。"""
    pass
