"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_time(value: datetime) -> str:
    return value.strftime(TIME_FORMAT)


def parse_time(value) -> Optional[datetime]:
    """将数据库中的时间字符串解析为 datetime，空值返回 None。"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.strptime(value, TIME_FORMAT)


class OrderStatus(enum.Enum):
    """订单 / 交易状态。"""

    NEW = "new"
    PENDING = "pending"
    REJECTED = "rejected"
    IN_CHAIN = "in_chain"
    CONFIRMED = "confirmed"
    INITIALIZED = "initialized"
    REFUND = "refund"

    @property
    def code(self) -> int:
        return STATUS_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "OrderStatus":
        try:
            return _CODE_TO_STATUS[int(code)]
        except (KeyError, TypeError, ValueError):
            raise ValueError(f"未知状态码: {code}")


# 持久化使用的稳定整数编码，不可调整
STATUS_CODES = {
    OrderStatus.NEW: 1,
    OrderStatus.PENDING: 2,
    OrderStatus.REJECTED: 3,
    OrderStatus.IN_CHAIN: 4,
    OrderStatus.CONFIRMED: 5,
    OrderStatus.INITIALIZED: 6,
    OrderStatus.REFUND: 7,
}

_CODE_TO_STATUS = {code: status for status, code in STATUS_CODES.items()}

# 进入这些状态时需要通知商户
REPORTABLE_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.REJECTED)


class TransactionType(enum.Enum):
    PAYMENT = "payment"
    PAYOUT = "payout"
    REFUND = "refund"


class Currency(enum.Enum):
    GRIN = "GRIN"
    BTC = "BTC"
    EUR = "EUR"
    USD = "USD"

    @property
    def precision(self) -> int:
        """最小单位换算：1 个单位 = precision 个最小单位。"""
        return _PRECISION[self]


_PRECISION = {
    Currency.GRIN: 1_000_000_000,
    Currency.BTC: 100_000_000,
    Currency.EUR: 100,
    Currency.USD: 100,
}


@dataclass
class Money:
    """金额（最小单位整数）+ 币种。"""

    amount: int
    currency: Currency = Currency.GRIN

    def to_dict(self) -> dict:
        return {"amount": self.amount, "currency": self.currency.value}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Money":
        try:
            return cls(int(data["amount"]), Currency(str(data["currency"]).upper()))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"金额格式无效: {e}")

    @classmethod
    def from_json(cls, raw: str) -> "Money":
        return cls.from_dict(json.loads(raw))


@dataclass
class Merchant:
    id: str
    email: str
    password: str
    token: str
    wallet_url: Optional[str] = None
    callback_url: Optional[str] = None
    balance: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Merchant":
        return cls(
            id=row["id"],
            email=row["email"],
            password=row["password"],
            token=row["token"],
            wallet_url=row["wallet_url"],
            callback_url=row["callback_url"],
            balance=row["balance"],
            created_at=parse_time(row["created_at"]),
        )


@dataclass
class Order:
    id: str
    external_id: str
    merchant_id: str
    grin_amount: int
    amount: Money
    status: OrderStatus
    confirmations: int
    order_type: TransactionType = TransactionType.PAYMENT
    email: Optional[str] = None
    message: str = ""
    redirect_url: Optional[str] = None
    wallet_tx_id: Optional[int] = None
    wallet_tx_slate_id: Optional[str] = None
    slate_messages: Optional[list] = None
    reported: bool = False
    report_attempts: int = 0
    next_report_attempt: Optional[datetime] = None
    callback_status: int = 0
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Order":
        slate_messages = row["slate_messages"]
        return cls(
            id=row["id"],
            external_id=row["external_id"],
            merchant_id=row["merchant_id"],
            grin_amount=row["grin_amount"],
            amount=Money.from_json(row["amount"]),
            status=OrderStatus.from_code(row["status"]),
            confirmations=row["confirmations"],
            order_type=TransactionType(row["order_type"]),
            email=row["email"],
            message=row["message"] or "",
            redirect_url=row["redirect_url"],
            wallet_tx_id=row["wallet_tx_id"],
            wallet_tx_slate_id=row["wallet_tx_slate_id"],
            slate_messages=json.loads(slate_messages) if slate_messages else None,
            reported=bool(row["reported"]),
            report_attempts=row["report_attempts"],
            next_report_attempt=parse_time(row["next_report_attempt"]),
            callback_status=row["callback_status"],
            expires_at=parse_time(row["expires_at"]),
            created_at=parse_time(row["created_at"]),
            updated_at=parse_time(row["updated_at"]),
        )


@dataclass
class Transaction:
    slate_id: str
    order_id: str
    status: OrderStatus
    transaction_type: TransactionType = TransactionType.PAYMENT
    amount: int = 0
    confirmations_required: int = 0
    confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    platform_fee: int = 0
    transfer_fee: int = 0
    realized_transfer_fee: Optional[int] = None
    debited_amount: int = 0
    num_inputs: int = 0
    num_outputs: int = 0
    height: Optional[int] = None
    commitment: Optional[str] = None
    messages: list = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def current_confirmations(self, current_height: int) -> int:
        """当前确认数：current_height - height + 1，未上链为 0。"""
        if self.height is None:
            return 0
        return max(current_height - self.height + 1, 0)

    @classmethod
    def from_row(cls, row) -> "Transaction":
        return cls(
            slate_id=row["slate_id"],
            order_id=row["order_id"],
            status=OrderStatus.from_code(row["status"]),
            transaction_type=TransactionType(row["transaction_type"]),
            amount=row["amount"],
            confirmations_required=row["confirmations_required"],
            confirmed=bool(row["confirmed"]),
            confirmed_at=parse_time(row["confirmed_at"]),
            platform_fee=row["platform_fee"],
            transfer_fee=row["transfer_fee"],
            realized_transfer_fee=row["realized_transfer_fee"],
            debited_amount=row["debited_amount"],
            num_inputs=row["num_inputs"],
            num_outputs=row["num_outputs"],
            height=row["height"],
            commitment=row["commitment"],
            messages=json.loads(row["messages"] or "[]"),
            created_at=parse_time(row["created_at"]),
            updated_at=parse_time(row["updated_at"]),
        )


@dataclass
class CallbackLog:
    id: int
    order_id: str
    attempt: int
    url: str
    method: str = "POST"
    status: Optional[int] = None
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    created_at: Optional[datetime] = None
