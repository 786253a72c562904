"""
Transaction Service — 例外定義

呼び出し元が「リクエストが不正」「決済ステップの失敗」「あとで再確認」を
区別できるよう、エラーは型で分ける。HTTP ステータスへの変換は main.py。
"""


class CheckoutError(Exception):
    code = "CHECKOUT_ERROR"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, "retryable": False}


class ValidationError(CheckoutError):
    """I/O の前に弾かれる不正なリクエスト"""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, messages: list[str] | str) -> None:
        if isinstance(messages, str):
            messages = [messages]
        super().__init__("; ".join(messages))
        self.messages = list(messages)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["messages"] = self.messages
        return body


class ProductNotFound(CheckoutError):
    code = "PRODUCT_NOT_FOUND"
    http_status = 404

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product with id {product_id} not found")
        self.product_id = product_id


class InsufficientStock(CheckoutError):
    """
    在庫不足。注文作成時と確定時の2か所で独立にチェックされる。
    """

    code = "INSUFFICIENT_STOCK"
    http_status = 404

    def __init__(
        self,
        product_id: int,
        requested: int,
        available: int | None = None,
    ) -> None:
        detail = f"Insufficient stock for product {product_id}: requested={requested}"
        if available is not None:
            detail += f", available={available}"
        super().__init__(detail)
        self.product_id = product_id
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(
            product_id=self.product_id,
            requested=self.requested,
            available=self.available,
        )
        return body


class PaymentGatewayError(CheckoutError):
    """
    決済ゲートウェイの失敗。

    retryable=True: 5xx / タイムアウト / 通信エラー (バックオフして再試行可)
    retryable=False: 4xx やレスポンス不正 (同じ入力での再試行は無意味)
    """

    code = "PAYMENT_GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        status_code: int | None = None,
        cause: BaseException | None = None,
        transaction_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.cause = cause
        self.transaction_id = transaction_id

    @property
    def http_status(self) -> int:
        return 503 if self.retryable else 502

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retryable"] = self.retryable
        body["gateway_status_code"] = self.status_code
        if self.transaction_id:
            body["transaction_id"] = self.transaction_id
        return body


class TransactionNotFound(CheckoutError):
    code = "TRANSACTION_NOT_FOUND"
    http_status = 404

    def __init__(self, transaction_id: str) -> None:
        super().__init__(f"Transaction with id {transaction_id} not found")
        self.transaction_id = transaction_id


class StateConflict(CheckoutError):
    """確定できない状態のトランザクションに対する操作"""

    code = "STATE_CONFLICT"
    http_status = 409

    def __init__(
        self,
        transaction_id: str,
        message: str,
        current_status: str | None = None,
    ) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id
        self.current_status = current_status

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(transaction_id=self.transaction_id, status=self.current_status)
        return body
