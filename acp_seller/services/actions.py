"""Protocol action sink: accept/reject, payment request and delivery per job.

Supports two backends:
- HTTP calls to the ACP backend (production)
- Log-only (development / testing) — logs each action instead of sending it

Set ACTION_BACKEND=http for production. Default is ACTION_BACKEND=log.
"""

import logging
from typing import Protocol
from urllib.parse import quote

import httpx

from acp_seller.config import settings
from acp_seller.schemas.job import AcceptOrReject, Delivery, PaymentRequest

logger = logging.getLogger(__name__)


class ActionError(Exception):
    """Raised when a protocol action could not be delivered."""
    pass


class ActionSink(Protocol):
    async def accept_or_reject(self, job_id: int | str, params: AcceptOrReject) -> None: ...

    async def request_payment(self, job_id: int | str, params: PaymentRequest) -> None: ...

    async def deliver(self, job_id: int | str, params: Delivery) -> None: ...

    async def aclose(self) -> None: ...


class LogActionSink:
    """Development sink — logs actions instead of calling the ACP backend."""

    async def accept_or_reject(self, job_id: int | str, params: AcceptOrReject) -> None:
        logger.info("ACTION respond job=%s accept=%s reason=%s", job_id, params.accept, params.reason)

    async def request_payment(self, job_id: int | str, params: PaymentRequest) -> None:
        logger.info(
            "ACTION payment job=%s amount=%s ca=%s symbol=%s mode=%s",
            job_id, params.amount, params.token_contract_address, params.token_symbol, params.mode,
        )

    async def deliver(self, job_id: int | str, params: Delivery) -> None:
        transfer = ""
        if params.transfer is not None:
            transfer = f" transfer={params.transfer.amount}@{params.transfer.contract_address}"
        logger.info("ACTION deliver job=%s deliverable=%s%s", job_id, params.deliverable, transfer)

    async def aclose(self) -> None:
        pass


class HttpActionSink:
    """Production sink — POSTs each action to the ACP backend."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"x-api-key": api_key},
            timeout=timeout,
            transport=transport,
        )

    async def accept_or_reject(self, job_id: int | str, params: AcceptOrReject) -> None:
        await self._post(job_id, "respond", params.model_dump())

    async def request_payment(self, job_id: int | str, params: PaymentRequest) -> None:
        await self._post(job_id, "payment", params.model_dump(by_alias=True, exclude_none=True))

    async def deliver(self, job_id: int | str, params: Delivery) -> None:
        await self._post(job_id, "deliver", params.model_dump(by_alias=True, exclude_none=True))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, job_id: int | str, action: str, payload: dict) -> None:
        path = f"/acp/jobs/{quote(str(job_id), safe='')}/{action}"
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.TimeoutException:
            logger.error("ACP %s for job %s timed out", action, job_id)
            raise ActionError(f"{action} for job {job_id} timed out")
        except httpx.RequestError as e:
            logger.error("ACP %s for job %s failed: %s", action, job_id, e)
            raise ActionError(f"{action} for job {job_id} failed: {e}")

        if resp.status_code >= 400:
            logger.error(
                "ACP %s for job %s returned %d: %s", action, job_id, resp.status_code, resp.text[:500]
            )
            raise ActionError(f"{action} for job {job_id} failed (status {resp.status_code})")
        logger.debug("ACP %s for job %s -> %d", action, job_id, resp.status_code)


def get_action_sink(api_key: str | None = None) -> ActionSink:
    if settings.action_backend == "http":
        if not api_key:
            raise ActionError("ACTION_BACKEND=http requires LITE_AGENT_API_KEY")
        return HttpActionSink(settings.acp_url, api_key, timeout=settings.api_timeout_seconds)
    return LogActionSink()
