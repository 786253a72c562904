"""
Transaction Service — ドメインモデル / リクエストモデル

金額はすべて最小通貨単位(センタボ)の int で扱う。float は使わない。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TransactionStatus(str, Enum):
    """
    状態遷移:
        PENDING → APPROVED / DECLINED / VOIDED / ERROR  (ゲートウェイの判定)
        APPROVED → FINISHED  (全明細の在庫引き落とし完了)
        APPROVED → ERROR     (確定時の在庫不足)
    """

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"
    ERROR = "ERROR"
    FINISHED = "FINISHED"


ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.APPROVED,
            TransactionStatus.DECLINED,
            TransactionStatus.VOIDED,
            TransactionStatus.ERROR,
        }
    ),
    TransactionStatus.APPROVED: frozenset(
        {TransactionStatus.FINISHED, TransactionStatus.ERROR}
    ),
    TransactionStatus.DECLINED: frozenset(),
    TransactionStatus.VOIDED: frozenset(),
    TransactionStatus.ERROR: frozenset(),
    TransactionStatus.FINISHED: frozenset(),
}


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


class GatewayStatus(str, Enum):
    """ゲートウェイが返すトランザクション状態(そのまま記録する)"""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"
    ERROR = "ERROR"


# ── ドメイン ─────────────────────────────────────


class Product(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    price: int
    quantity: int


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: int
    quantity: int = Field(gt=0)
    unit_price: int
    position: int = 0

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity


class Order(BaseModel):
    """Order Builder の出力。まだ永続化されていない。"""

    model_config = ConfigDict(frozen=True)

    customer: str
    total: int
    line_items: list[LineItem]


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer: str
    total: int
    status: TransactionStatus
    gateway_payment_id: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    line_items: list[LineItem] = []


# ── ゲートウェイ入出力 ───────────────────────────


class CardDetails(BaseModel):
    """生のカード情報。ログにも DB にも残さない。"""

    number: str
    cvc: str
    exp_month: str
    exp_year: str
    card_holder: str

    def __repr__(self) -> str:
        return f"CardDetails(last_four={self.number[-4:]!r})"

    __str__ = __repr__


class CardToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    brand: str | None = None
    last_four: str | None = None


class ChargeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    total: int
    customer_email: str
    card_token: str
    acceptance_token: str
    installments: int = 1


class ChargeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    status: GatewayStatus


# ── Request Models ───────────────────────────────


class ItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(alias="productId", ge=1)
    quantity: int = Field(ge=1)


class CreateTransactionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    customer: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    products: list[ItemRequest] = Field(min_length=1)
    card_token: str = Field(alias="cardToken", min_length=1)
    acceptance_token: str | None = Field(default=None, alias="acceptanceToken")
    installments: int = Field(default=1, ge=1)
