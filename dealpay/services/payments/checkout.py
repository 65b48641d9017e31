"""Viva Wallet checkout order creation.

Creates the gateway-side order, then records a `pending` payment order keyed
by the returned order code so later notifications can be reconciled.
"""

from decimal import ROUND_HALF_UP, Decimal

import httpx

from dealpay.common.logging import logger
from dealpay.common.metrics import checkout_requests_total
from dealpay.common.state_machine import PENDING
from dealpay.services.payments.models import PaymentOrder
from dealpay.services.payments.schemas import CheckoutRequest, CheckoutResponse


class UpstreamError(Exception):
    """The payment gateway rejected or failed a synchronous call."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"gateway error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def _json_object(resp: httpx.Response, what: str) -> dict:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        logger.error("viva_wallet_unexpected_body what=%s status=%s body=%s", what, resp.status_code, resp.text[:200])
        raise UpstreamError(502, f"{what} response is not a JSON object")
    return body


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_viva_wallet_order(req: CheckoutRequest, user_id: str, source_code: str) -> dict:
    """Request body for `POST /checkout/v2/orders`."""

    customer = req.customer_info
    return {
        "amount": to_minor_units(req.amount),
        "customerTrns": f"Order #{req.order_id}",
        "customer": {
            "email": customer.email,
            "fullName": f"{customer.first_name} {customer.last_name}",
            "phone": customer.phone,
            "countryCode": customer.country,
            "requestLang": "en-GB",
        },
        "paymentTimeout": 1800,
        "preauth": False,
        "allowRecurring": False,
        "maxInstallments": 0,
        "paymentNotification": True,
        "disableExactAmount": False,
        "disableCash": True,
        "disableWallet": False,
        "sourceCode": source_code,
        "merchantTrns": req.order_id,
        "tags": [f"orderId:{req.order_id}", f"userId:{user_id}"],
        "successUrl": f"{customer.return_url}?status=success",
        "failureUrl": f"{customer.return_url}?status=failed",
    }


class VivaWalletClient:
    """Minimal OAuth client-credentials + order creation client."""

    def __init__(
        self,
        base_url: str,
        accounts_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.accounts_url = accounts_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.transport = transport

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        resp = await client.post(
            f"{self.accounts_url}/connect/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        if resp.status_code >= 400:
            logger.error("viva_wallet_token_failed status=%s body=%s", resp.status_code, resp.text)
            raise UpstreamError(resp.status_code, f"failed to get access token: {resp.text}")
        token = _json_object(resp, "token").get("access_token")
        if not isinstance(token, str) or not token:
            raise UpstreamError(502, "token response missing access_token")
        return token

    async def create_order(self, order_payload: dict) -> str:
        """Create a checkout order and return its order code."""

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                token = await self._access_token(client)
                resp = await client.post(
                    f"{self.base_url}/checkout/v2/orders",
                    headers={"Authorization": f"Bearer {token}"},
                    json=order_payload,
                )
        except httpx.HTTPError as exc:
            raise UpstreamError(502, f"gateway unreachable: {exc}") from exc
        if resp.status_code >= 400:
            logger.error("viva_wallet_order_failed status=%s body=%s", resp.status_code, resp.text)
            raise UpstreamError(resp.status_code, f"failed to create order: {resp.text}")
        order_code = _json_object(resp, "order").get("orderCode")
        if order_code is None:
            raise UpstreamError(502, "order response missing orderCode")
        return str(order_code)


class CheckoutService:
    """Starts gateway checkouts and records the pending payment order."""

    def __init__(
        self,
        session_factory,
        client: VivaWalletClient,
        checkout_url: str,
        source_code: str,
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.checkout_url = checkout_url
        self.source_code = source_code
        self.service_name = service_name

    async def create_viva_wallet_order(self, req: CheckoutRequest, user_id: str) -> CheckoutResponse:
        try:
            order_code = await self.client.create_order(build_viva_wallet_order(req, user_id, self.source_code))
        except UpstreamError:
            checkout_requests_total.labels(service=self.service_name, provider="viva_wallet", result="upstream_error").inc()
            raise

        with self.session_factory() as db:
            db.add(
                PaymentOrder(
                    correlation_id=order_code,
                    order_id=req.order_id,
                    user_id=user_id,
                    provider="viva_wallet",
                    amount=req.amount,
                    currency=req.currency.upper(),
                    status=PENDING,
                    order_items=[
                        item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in req.order_items
                    ],
                    customer_info=req.customer_info.model_dump(mode="json", by_alias=True),
                )
            )
            db.commit()

        checkout_requests_total.labels(service=self.service_name, provider="viva_wallet", result="created").inc()
        logger.info("checkout_order_created order_id=%s order_code=%s", req.order_id, order_code)
        return CheckoutResponse(
            success=True,
            checkout_url=f"{self.checkout_url}?ref={order_code}",
            order_code=order_code,
        )
