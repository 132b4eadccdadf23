"""
Gym backend client: the request/response contract the subscription core relies on.

Error mapping:
  2xx                → parsed schema
  404                → NotFoundError
  other 4xx          → PolicyConflict (business rule refused by the server)
  5xx / network / timeout → TransportError (safe to re-issue)
"""

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from gymdesk.config import settings
from gymdesk.exceptions import BackendError, NotFoundError, PolicyConflict, TransportError
from gymdesk.schemas import (
    Payment,
    PaymentCreate,
    PaymentReceipt,
    PaymentStats,
    Plan,
    Reward,
    RewardApply,
    Subscription,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionRenew,
)

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    detail = body.get("detail") if isinstance(body, dict) else body
    if isinstance(detail, list):
        # FastAPI validation errors
        return "; ".join(str(d.get("msg", d)) if isinstance(d, dict) else str(d) for d in detail)
    return str(detail)


class GymApiClient:
    """
    Thin async wrapper over the backend endpoints.

    Pass `client` to reuse one httpx.AsyncClient (connection pooling, tests);
    otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        token: str | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.API_TIMEOUT_SEC
        self._client = client
        token = token if token is not None else settings.API_TOKEN
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> "GymApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, json=json, params=params, headers=self._headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, json=json, params=params, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.error("API timeout: %s %s", method, endpoint)
            raise TransportError(f"Request timed out: {method} {endpoint}") from e
        except httpx.RequestError as e:
            logger.error("API call error: %s %s: %s", method, endpoint, e)
            raise TransportError(f"Could not reach the server: {e}") from e

        if resp.status_code in (200, 201):
            try:
                return resp.json()
            except ValueError as e:
                raise TransportError("Server returned an unreadable response", resp.status_code) from e
        if resp.status_code == 204:
            return None

        detail = _error_detail(resp)
        logger.warning("API error: %s %s → %s %s", method, endpoint, resp.status_code, detail)
        if resp.status_code == 404:
            raise NotFoundError(404, detail)
        if 400 <= resp.status_code < 500:
            raise PolicyConflict(resp.status_code, detail)
        raise TransportError(f"Server error {resp.status_code}: {detail}", resp.status_code)

    @staticmethod
    def _parse(model: type[BaseModel], data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise BackendError(200, f"Unexpected {model.__name__} payload: {e}") from e

    def _parse_list(self, model: type[BaseModel], data: Any) -> list:
        return [self._parse(model, item) for item in (data or [])]

    @staticmethod
    def _body(model: BaseModel) -> dict:
        return model.model_dump(mode="json", exclude_none=True)

    # ── Subscriptions ──────────────────────────────────────

    async def create_subscription(self, client_id: str, data: SubscriptionCreate) -> Subscription:
        logger.debug("Creating subscription for client %s with %s", client_id, data)
        body = await self._request("POST", f"/clients/{client_id}/subscriptions", json=self._body(data))
        return self._parse(Subscription, body)

    async def list_subscriptions(
        self,
        client_id: str,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> list[Subscription]:
        body = await self._request(
            "GET",
            f"/clients/{client_id}/subscriptions",
            params={"limit": limit, "offset": offset},
        )
        return self._parse_list(Subscription, body)

    async def get_active_subscription(self, client_id: str) -> Subscription:
        body = await self._request("GET", f"/clients/{client_id}/subscriptions/active")
        return self._parse(Subscription, body)

    async def renew_subscription(
        self,
        client_id: str,
        subscription_id: str,
        data: SubscriptionRenew,
    ) -> Subscription:
        body = await self._request(
            "POST",
            f"/clients/{client_id}/subscriptions/{subscription_id}/renew",
            json=self._body(data),
        )
        return self._parse(Subscription, body)

    async def cancel_subscription(
        self,
        client_id: str,
        subscription_id: str,
        data: SubscriptionCancel,
    ) -> Subscription:
        body = await self._request(
            "PATCH",
            f"/clients/{client_id}/subscriptions/{subscription_id}/cancel",
            json=self._body(data),
        )
        return self._parse(Subscription, body)

    # ── Payments ───────────────────────────────────────────

    async def create_payment(self, subscription_id: str, data: PaymentCreate) -> PaymentReceipt:
        body = await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/payments",
            json=self._body(data),
        )
        return self._parse(PaymentReceipt, body)

    async def list_payments(
        self,
        subscription_id: str,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> list[Payment]:
        body = await self._request(
            "GET",
            f"/subscriptions/{subscription_id}/payments",
            params={"limit": limit, "offset": offset},
        )
        return self._parse_list(Payment, body)

    async def get_payment_stats(self, subscription_id: str) -> PaymentStats:
        body = await self._request("GET", f"/subscriptions/{subscription_id}/payments/stats")
        return self._parse(PaymentStats, body)

    # ── Plans & Rewards ────────────────────────────────────

    async def get_plan(self, plan_id: str) -> Plan:
        body = await self._request("GET", f"/plans/{plan_id}")
        return self._parse(Plan, body)

    async def list_available_rewards(self, client_id: str) -> list[Reward]:
        body = await self._request("GET", f"/clients/{client_id}/rewards/available")
        return self._parse_list(Reward, body)

    async def apply_reward(self, reward_id: str, data: RewardApply) -> dict:
        body = await self._request("POST", f"/rewards/{reward_id}/apply", json=self._body(data))
        return body or {}
