"""
手续费计算：纯函数，无副作用。

- 平台费：按金额查阶梯费率（基点），无阶梯时使用统一费率
- 转账费：钱包报价的网络费，仅出账交易（提现 / 退款）承担
- 实际转账费：交易广播后由钱包回报，创建时为空
"""

from dataclasses import dataclass, replace
from typing import Optional

from app.models.schemas import TransactionType

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class FeeSchedule:
    share_bps: int = 100
    transfer_fee: int = 8_000_000
    tiers: tuple = ()

    @classmethod
    def from_dict(cls, data: dict) -> "FeeSchedule":
        return cls(
            share_bps=int(data["share_bps"]),
            transfer_fee=int(data["transfer_fee"]),
            tiers=tuple(sorted((int(t), int(b)) for t, b in data.get("tiers", ()))),
        )

    def rate_for(self, amount: int) -> int:
        """返回金额适用的费率（基点）：取不超过金额的最高阶梯。"""
        bps = self.share_bps
        for threshold, tier_bps in self.tiers:
            if amount >= threshold:
                bps = tier_bps
            else:
                break
        return bps


@dataclass(frozen=True)
class Fees:
    platform_fee: int
    transfer_fee: int
    realized_transfer_fee: Optional[int] = None

    def realize(self, actual_fee: Optional[int]) -> "Fees":
        """记录广播后的实际转账费。"""
        if actual_fee is None:
            return self
        return replace(self, realized_transfer_fee=int(actual_fee))


def calculate_fees(
    amount: int,
    transaction_type: TransactionType,
    schedule: FeeSchedule,
    quoted_transfer_fee: Optional[int] = None,
) -> Fees:
    """
    计算一笔交易的手续费。

    Args:
        amount: 交易金额（纳格林）。
        transaction_type: payment / payout / refund。
        schedule: 手续费方案。
        quoted_transfer_fee: 钱包报价的网络费，为 None 时使用方案默认值。

    Returns:
        Fees(platform_fee, transfer_fee, realized_transfer_fee=None)

    Raises:
        ValueError: 金额为负数。
    """
    if amount < 0:
        raise ValueError("金额不能为负数")

    if transaction_type == TransactionType.REFUND:
        platform_fee = 0
    else:
        platform_fee = amount * schedule.rate_for(amount) // BPS_DENOMINATOR

    if transaction_type == TransactionType.PAYMENT:
        transfer_fee = 0
    elif quoted_transfer_fee is not None:
        transfer_fee = int(quoted_transfer_fee)
    else:
        transfer_fee = schedule.transfer_fee

    return Fees(platform_fee=platform_fee, transfer_fee=transfer_fee)
