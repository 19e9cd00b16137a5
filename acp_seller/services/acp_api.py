"""ACP marketplace API client.

Resolves the seller's own agent profile (wallet address, listed offerings) and
registers / delists job offerings. Authenticates with the agent API key in the
``x-api-key`` header.
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from acp_seller.schemas.offering import OfferingDescriptor

logger = logging.getLogger(__name__)

DEFAULT_SLA_MINUTES = 5


class AcpApiError(Exception):
    """Raised when the marketplace API is unreachable or rejects a call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class AgentProfile:
    """The calling agent as seen by the marketplace."""

    wallet_address: str
    name: str = ""
    agent_id: str = ""
    offering_names: list[str] = field(default_factory=list)


def build_offering_payload(descriptor: OfferingDescriptor) -> dict[str, Any]:
    """Registration payload for an offering, with marketplace defaults filled in."""
    price_v2 = descriptor.price_v2
    return {
        "name": descriptor.name,
        "description": descriptor.description,
        "priceV2": (
            price_v2.model_dump() if price_v2 is not None
            else {"type": "fixed", "value": descriptor.job_fee}
        ),
        "slaMinutes": descriptor.sla_minutes or DEFAULT_SLA_MINUTES,
        "requiredFunds": descriptor.required_funds,
        "requirement": descriptor.requirement or {},
        "deliverable": descriptor.deliverable or "string",
    }


class AcpApiClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise AcpApiError("LITE_AGENT_API_KEY is not set")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"x-api-key": api_key},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "AcpApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.error("ACP API %s %s timed out", method, path)
            raise AcpApiError(f"{method} {path} timed out")
        except httpx.RequestError as e:
            logger.error("ACP API %s %s failed: %s", method, path, e)
            raise AcpApiError(f"{method} {path} failed: {e}")

        if resp.status_code >= 400:
            logger.error("ACP API %s %s returned %d: %s", method, path, resp.status_code, resp.text[:500])
            raise AcpApiError(
                f"{method} {path} failed (status {resp.status_code}): {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise AcpApiError(f"{method} {path} returned invalid JSON") from e

    async def get_agent_info(self) -> AgentProfile:
        body = await self._request("GET", "/acp/me")
        data = body.get("data", body) if isinstance(body, dict) else {}
        if not isinstance(data, dict):
            raise AcpApiError("Unexpected /acp/me response")
        offerings = data.get("jobOfferings") or data.get("jobs") or []
        return AgentProfile(
            wallet_address=str(data.get("walletAddress") or ""),
            name=str(data.get("name") or ""),
            agent_id=str(data.get("id") or ""),
            offering_names=[o["name"] for o in offerings if isinstance(o, dict) and o.get("name")],
        )

    async def get_wallet_address(self) -> str:
        profile = await self.get_agent_info()
        if not profile.wallet_address:
            raise AcpApiError("Could not resolve walletAddress from /acp/me")
        return profile.wallet_address

    async def create_job_offering(self, payload: dict[str, Any]) -> Any:
        result = await self._request("POST", "/acp/job-offerings", json={"data": payload})
        logger.info("Registered job offering '%s'", payload.get("name"))
        return result

    async def delete_job_offering(self, name: str) -> None:
        await self._request("DELETE", f"/acp/job-offerings/{quote(name, safe='')}")
        logger.info("Delisted job offering '%s'", name)
