"""
Marketplace Service — 決済ゲートウェイ (Stripe Connect)

Stripe への呼び出しはすべてこのクラスを経由する。
ドメイン側は CheckoutSession / GatewayEvent だけを扱い、
stripe の型や例外は外に漏らさない (ExternalServiceError に変換する)。

Webhook の署名検証には「パース前の生のボディ」が必要。
"""

import json
import logging
from dataclasses import dataclass

import stripe
from pydantic import BaseModel, Field

from .errors import ExternalServiceError, InvalidSignatureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None


class GatewayEvent(BaseModel):
    """検証済みの Webhook イベント"""
    id: str
    type: str
    object: dict = Field(default_factory=dict)
    account: str | None = None


class PaymentGateway:
    def __init__(
        self,
        api_key: str,
        platform_webhook_secret: str,
        connected_webhook_secret: str,
        tolerance: int = 300,
    ):
        self.api_key = api_key
        self.webhook_secrets = {
            "platform": platform_webhook_secret,
            "connected": connected_webhook_secret,
        }
        self.tolerance = tolerance
        self._client: stripe.StripeClient | None = None

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self.api_key:
                raise ExternalServiceError("Payment gateway is not configured (STRIPE_SECRET_KEY)")
            self._client = stripe.StripeClient(
                self.api_key, http_client=stripe.HTTPXClient()
            )
        return self._client

    # ── Checkout ─────────────────────────────────

    async def create_checkout_session(
        self,
        line_items: list[dict],
        destination: str,
        application_fee: int,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Destination charge のホスト型チェックアウトを作成する。

        metadata は PaymentIntent にも載せる。
        Webhook (payment_intent.succeeded) から注文を引けるのはこれだけ。
        """
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {
                "application_fee_amount": application_fee,
                "transfer_data": {"destination": destination},
                "metadata": metadata,
            },
        }
        try:
            session = await self.client.checkout.sessions.create_async(params=params)
        except stripe.StripeError as e:
            logger.error("Checkout session creation failed: %s", e)
            raise ExternalServiceError(f"Checkout session creation failed: {e}") from e
        return CheckoutSession(id=session.id, url=session.url)

    # ── Webhook ──────────────────────────────────

    def construct_event(
        self,
        payload: bytes,
        signature: str | None,
        kind: str = "platform",
    ) -> GatewayEvent:
        """署名を検証してからイベントをパースする。"""
        secret = self.webhook_secrets[kind]
        if not signature:
            raise InvalidSignatureError("missing Stripe-Signature header")
        if not secret:
            raise InvalidSignatureError(f"{kind} webhook secret is not configured")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            raise InvalidSignatureError("invalid payload encoding") from e
        try:
            stripe.WebhookSignature.verify_header(body, signature, secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignatureError(str(e)) from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise InvalidSignatureError("invalid payload") from e

        return GatewayEvent(
            id=data.get("id", ""),
            type=data.get("type", ""),
            object=(data.get("data") or {}).get("object") or {},
            account=data.get("account"),
        )

    # ── Connect: 接続アカウント ───────────────────

    async def create_account(self, email: str | None = None, country: str = "US") -> str:
        """
        接続アカウントを作成する。

        手数料・損失はプラットフォーム負担、ダッシュボードは Express。
        """
        try:
            account = await self.client.accounts.create_async(
                params={
                    "country": country,
                    "email": email,
                    "controller": {
                        "fees": {"payer": "application"},
                        "losses": {"payments": "application"},
                        "stripe_dashboard": {"type": "express"},
                    },
                }
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Account creation failed: {e}") from e
        return account.id

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        try:
            link = await self.client.account_links.create_async(
                params={
                    "account": account_id,
                    "collect": "eventually_due",
                    "refresh_url": refresh_url,
                    "return_url": return_url,
                    "type": "account_onboarding",
                }
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Account link creation failed: {e}") from e
        return link.url

    async def retrieve_account(self, account_id: str) -> dict:
        try:
            account = await self.client.accounts.retrieve_async(account_id)
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Account retrieve failed: {e}") from e
        requirements = account.requirements
        return {
            "id": account.id,
            "charges_enabled": account.charges_enabled,
            "payouts_enabled": account.payouts_enabled,
            "details_submitted": account.details_submitted,
            "currently_due": list(requirements.currently_due or []) if requirements else [],
        }

    async def create_product(
        self,
        name: str,
        unit_amount: int,
        currency: str,
        connected_account: str,
        description: str | None = None,
    ) -> tuple[str, str]:
        """
        プラットフォーム側に商品とデフォルト価格を作り、
        metadata で接続アカウントに対応付ける。(product_id, price_id) を返す。
        """
        params = {
            "name": name,
            "metadata": {"connected_account": connected_account},
            "default_price_data": {"unit_amount": unit_amount, "currency": currency},
        }
        if description:
            params["description"] = description
        try:
            product = await self.client.products.create_async(params=params)
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Product creation failed: {e}") from e
        default_price = product.default_price
        price_id = default_price if isinstance(default_price, str) else default_price.id
        return product.id, price_id
