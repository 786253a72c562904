"""
Transaction Service — 決済ゲートウェイクライアント (REST)

外部決済ゲートウェイへの呼び出しをまとめる:
  - 加盟店の acceptance token 取得   GET  /merchants/{public_key}
  - カードのトークン化              POST /tokens/cards
  - 課金(charge)の作成             POST /transactions
  - 課金状態の照会                  GET  /transactions/{id}
  - 参照 ID による課金の検索        GET  /transactions?reference=...

エラー方針:
  4xx            → PaymentGatewayError(retryable=False)
  5xx / 429      → PaymentGatewayError(retryable=True)
  タイムアウト / 通信エラー → PaymentGatewayError(retryable=True)

冪等な照会系だけを指数バックオフで再試行する。トークン化と課金作成は
ゲートウェイ側で二重作成になり得るので再試行しない。
"""

import asyncio
import hashlib
import logging

import httpx

from .config import GatewaySettings
from .errors import PaymentGatewayError
from .logging_config import txn_prefix
from .models import CardDetails, CardToken, ChargeRequest, ChargeResult, GatewayStatus

logger = logging.getLogger(__name__)


def integrity_signature(reference: str, amount: int, currency: str, secret: str) -> str:
    """
    課金リクエストの整合性署名。

    SHA256(reference || amount || currency || secret) の hex。
    参照 ID と金額を結び付け、同じ参照で別の金額を請求させない。
    """
    payload = f"{reference}{amount}{currency}{secret}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _parse_status(raw: object) -> GatewayStatus:
    try:
        return GatewayStatus(str(raw).upper())
    except ValueError:
        raise PaymentGatewayError(
            f"Unrecognised gateway status: {raw!r}", retryable=False
        ) from None


class PaymentGatewayClient:
    """
    決済ゲートウェイ用の非同期 HTTP クライアント。

    client を渡さなければ設定からタイムアウト付きの httpx.AsyncClient を作り、
    aclose() で閉じる。
    """

    def __init__(
        self,
        settings: GatewaySettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.timeout_seconds),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PaymentGatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.public_key}",
            "Content-Type": "application/json",
        }

    # ── 低レベル呼び出し ─────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=self._headers
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("Gateway %s timed out", operation)
            raise PaymentGatewayError(
                f"Gateway {operation} timed out", retryable=True, cause=e
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            retryable = status >= 500 or status == 429
            if retryable:
                logger.error("Gateway %s failed with HTTP %s", operation, status)
            else:
                logger.warning("Gateway %s rejected with HTTP %s", operation, status)
            raise PaymentGatewayError(
                f"Gateway {operation} failed with HTTP {status}",
                retryable=retryable,
                status_code=status,
                cause=e,
            ) from e
        except httpx.TransportError as e:
            logger.error("Gateway %s unreachable: %s", operation, e)
            raise PaymentGatewayError(
                f"Gateway {operation} unreachable", retryable=True, cause=e
            ) from e

        try:
            body = response.json()
        except ValueError as e:
            raise PaymentGatewayError(
                f"Gateway {operation} returned a non-JSON body",
                retryable=False,
                status_code=response.status_code,
                cause=e,
            ) from e
        if not isinstance(body, dict):
            raise PaymentGatewayError(
                f"Gateway {operation} returned an unexpected body",
                retryable=False,
                status_code=response.status_code,
            )
        return body

    async def _send_idempotent(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: dict | None = None,
    ) -> dict:
        """照会系: retryable なエラーだけバックオフして再試行する。"""
        attempt = 0
        while True:
            try:
                return await self._send(method, path, operation, params=params)
            except PaymentGatewayError as e:
                if not e.retryable or attempt >= self.settings.max_retries:
                    raise
                delay = self.settings.backoff_seconds * (2**attempt)
                attempt += 1
                logger.info(
                    "Retrying gateway %s in %.2fs (attempt %s/%s)",
                    operation, delay, attempt, self.settings.max_retries,
                )
                await asyncio.sleep(delay)

    # ── 公開 API ────────────────────────────────

    async def fetch_acceptance_token(self) -> str:
        """加盟店の規約同意トークン(presigned acceptance)を取得する。"""
        body = await self._send_idempotent(
            "GET", f"/merchants/{self.settings.public_key}", "fetch_acceptance_token"
        )
        try:
            return body["data"]["presigned_acceptance"]["acceptance_token"]
        except (KeyError, TypeError) as e:
            raise PaymentGatewayError(
                "Gateway merchant response has no acceptance token",
                retryable=False,
                cause=e,
            ) from e

    async def tokenize_card(self, card: CardDetails) -> CardToken:
        """
        生のカード情報を一度だけ送り、トークンを受け取る。

        再試行しない(ゲートウェイ側で重複トークン化になり得る)。
        """
        body = await self._send(
            "POST",
            "/tokens/cards",
            "tokenize_card",
            json={
                "number": card.number,
                "cvc": card.cvc,
                "exp_month": card.exp_month,
                "exp_year": card.exp_year,
                "card_holder": card.card_holder,
            },
        )
        data = body.get("data") or {}
        if not data.get("id"):
            raise PaymentGatewayError(
                "Gateway tokenization response has no token", retryable=False
            )
        logger.info("Card tokenized (brand=%s, last_four=%s)", data.get("brand"), data.get("last_four"))
        return CardToken(
            token=data["id"],
            brand=data.get("brand"),
            last_four=data.get("last_four"),
        )

    async def create_charge(self, charge: ChargeRequest) -> ChargeResult:
        """
        課金を作成する。reference にはローカルのトランザクション ID を使う。

        再試行しない。呼び出し側は参照が記録済みのトランザクションに対して
        二度呼ばないこと。
        """
        currency = self.settings.currency
        payload = {
            "amount_in_cents": charge.total,
            "currency": currency,
            "signature": integrity_signature(
                charge.transaction_id,
                charge.total,
                currency,
                self.settings.integrity_secret,
            ),
            "customer_email": charge.customer_email,
            "payment_method": {
                "type": "CARD",
                "token": charge.card_token,
                "installments": charge.installments,
            },
            "reference": charge.transaction_id,
            "acceptance_token": charge.acceptance_token,
        }
        logger.info("%s Creating charge for %s %s", txn_prefix(charge.transaction_id), charge.total, currency)
        body = await self._send("POST", "/transactions", "create_charge", json=payload)
        return self._charge_result(body.get("data"))

    async def query_status(self, gateway_payment_id: str) -> GatewayStatus:
        body = await self._send_idempotent(
            "GET", f"/transactions/{gateway_payment_id}", "query_status"
        )
        data = body.get("data")
        if not isinstance(data, dict):
            raise PaymentGatewayError(
                "Gateway status response has no data", retryable=False
            )
        return _parse_status(data.get("status"))

    async def find_charge_by_reference(self, reference: str) -> ChargeResult | None:
        """
        参照 ID で課金を探す。

        課金作成のレスポンスが失われた(タイムアウト等)トランザクションの
        回復に使う。見つからなければ None。

        reference が一致する課金だけを採用する。reference を持たない
        課金は別トランザクションのものかもしれないので無視する。
        """
        body = await self._send_idempotent(
            "GET",
            "/transactions",
            "find_charge_by_reference",
            params={"reference": reference},
        )
        matches = body.get("data") or []
        if isinstance(matches, dict):
            matches = [matches]
        for item in matches:
            if isinstance(item, dict) and item.get("reference") == reference:
                return self._charge_result(item)
        return None

    @staticmethod
    def _charge_result(data: object) -> ChargeResult:
        if not isinstance(data, dict) or not data.get("id"):
            raise PaymentGatewayError(
                "Gateway charge response has no payment id", retryable=False
            )
        return ChargeResult(payment_id=str(data["id"]), status=_parse_status(data.get("status")))
