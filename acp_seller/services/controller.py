"""Job lifecycle controller: drives one job event to a terminal outcome.

REQUEST:     validate -> accept -> (request funds) -> execute -> deliver
TRANSACTION: execute -> deliver (accept/reject is no longer possible)
other:       acknowledged, no action

Handler and offering failures never escape ``handle``; each one maps to a
job-level outcome and is logged with the job id.
"""

import enum
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import jsonschema
from referencing.exceptions import Unresolvable

from acp_seller.schemas.job import AcceptOrReject, Delivery, JobEvent, JobPhase, Memo, PaymentRequest
from acp_seller.schemas.offering import DeliverableResult
from acp_seller.services.actions import ActionError, ActionSink
from acp_seller.services.handlers import ExecutionFailure
from acp_seller.services.registry import LoadError, OfferingRegistry, ResolvedOffering

logger = logging.getLogger(__name__)

OFFERING_NAME_KEYS = ("jobOfferingName", "offeringName")

ACCEPT_REASON = "Job accepted"
UNROUTED_ACCEPT_REASON = "Accepted (no offering matched)"
VALIDATION_FAILED_REASON = "Validation failed"


class JobOutcome(enum.Enum):
    ACCEPTED_UNROUTED = "accepted_unrouted"  # REQUEST with no offering name
    REJECTED = "rejected"
    DELIVERED = "delivered"
    SKIPPED = "skipped"  # TRANSACTION with no offering name
    FAILED = "failed"  # TRANSACTION failure, job left as-is
    ACTION_FAILED = "action_failed"  # the action sink refused a call
    IGNORED = "ignored"


@dataclass(frozen=True)
class ExtractedRequest:
    offering_name: str | None
    requirements: dict[str, Any] = field(default_factory=dict)


def _first_name(source: dict[str, Any]) -> str | None:
    for key in OFFERING_NAME_KEYS:
        value = source.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _decode(content: object) -> object:
    if isinstance(content, str):
        try:
            return json.loads(content)
        except ValueError:
            return None
    return content


def _from_negotiation_memo(memos: list[Memo]) -> tuple[str | None, dict[str, Any]]:
    """Read offering name and requirements from the latest NEGOTIATION memo."""
    memo = next((m for m in reversed(memos) if m.next_phase == JobPhase.NEGOTIATION), None)
    if memo is None or memo.content in (None, ""):
        return None, {}

    content = _decode(memo.content)
    if not isinstance(content, dict):
        return None, {"raw": memo.content}

    # ACP request envelope: {"name": <offering>, "requirement": {...}}
    if "requirement" in content and isinstance(content.get("name"), str):
        requirement = _decode(content["requirement"])
        return content["name"].strip() or None, requirement if isinstance(requirement, dict) else {}

    name = _first_name(content)
    requirements = content.get("serviceRequirements")
    if isinstance(requirements, dict):
        return name, requirements
    return name, content


def extract_request(event: JobEvent) -> ExtractedRequest:
    """Recover the target offering and its requirements from a job event.

    Context fields win; the latest memo moving the job to NEGOTIATION is the
    fallback; otherwise the requirements are empty.
    """
    name = _first_name(event.context)
    requirements = _decode(event.context.get("serviceRequirements"))
    if name is not None and isinstance(requirements, dict):
        return ExtractedRequest(name, dict(requirements))

    memo_name, memo_requirements = _from_negotiation_memo(event.memos)
    return ExtractedRequest(
        offering_name=name or memo_name,
        requirements=dict(requirements) if isinstance(requirements, dict) else dict(memo_requirements),
    )


@contextmanager
def _sink_call(action: str, job_id: int | str) -> Iterator[None]:
    try:
        yield
    except ActionError:
        raise
    except Exception as e:
        raise ActionError(f"{action} for job {job_id} failed: {e}") from e


class JobLifecycleController:
    def __init__(
        self,
        registry: OfferingRegistry,
        sink: ActionSink,
        handler_timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.sink = sink
        self.handler_timeout = handler_timeout

    async def handle(self, event: JobEvent) -> JobOutcome:
        """Process one job event. Never raises for job-level failures."""
        logger.info(
            "New task job=%s phase=%s client=%s price=%s context=%s",
            event.id, event.phase.name, event.client_address, event.price, event.context,
        )
        try:
            if event.phase == JobPhase.REQUEST:
                outcome = await self._handle_request(event)
            elif event.phase == JobPhase.TRANSACTION:
                outcome = await self._handle_transaction(event)
            else:
                logger.info("Job %s in phase %s — no action needed", event.id, event.phase.name)
                outcome = JobOutcome.IGNORED
        except ActionError as e:
            logger.error("Job %s: protocol action failed, stopping: %s", event.id, e)
            outcome = JobOutcome.ACTION_FAILED

        logger.info("Job %s finished: %s", event.id, outcome.value)
        return outcome

    async def _handle_request(self, event: JobEvent) -> JobOutcome:
        job_id = event.id
        request = extract_request(event)

        if request.offering_name is None:
            # Permissive fallback: nobody may service this job
            logger.warning("Job %s: no offering name resolved — accepting job generically", job_id)
            await self._respond(job_id, accept=True, reason=UNROUTED_ACCEPT_REASON)
            return JobOutcome.ACCEPTED_UNROUTED

        name = request.offering_name
        requirements = request.requirements
        try:
            offering = await self.registry.resolve(name)
        except LoadError as e:
            logger.error("Job %s: cannot load offering '%s': %s", job_id, name, e)
            await self._respond(job_id, accept=False, reason=f"Offering load failed: {e}")
            return JobOutcome.REJECTED

        self._check_requirement_schema(job_id, offering, requirements)

        try:
            valid = await offering.handlers.validate(requirements, self.handler_timeout)
        except ExecutionFailure as e:
            logger.exception("Job %s: %s failed for offering '%s'", job_id, e.capability, name)
            return await self._reject_for_failure(job_id, e)
        if not valid:
            logger.info("Job %s: validation failed for offering '%s' — rejecting", job_id, name)
            await self._respond(job_id, accept=False, reason=VALIDATION_FAILED_REASON)
            return JobOutcome.REJECTED

        await self._respond(job_id, accept=True, reason=ACCEPT_REASON)

        if offering.descriptor.required_funds:
            try:
                funds = await offering.handlers.request_funds(requirements, self.handler_timeout)
            except ExecutionFailure as e:
                logger.exception("Job %s: %s failed for offering '%s'", job_id, e.capability, name)
                return await self._reject_for_failure(job_id, e)
            payment = PaymentRequest(
                amount=funds.amount,
                token_contract_address=funds.token_contract_address,
                token_symbol=funds.token_symbol,
                mode="request",
            )
            with _sink_call("payment", job_id):
                await self.sink.request_payment(job_id, payment)
            logger.info(
                "Job %s: requested %s %s (ca: %s)",
                job_id, funds.amount, funds.token_symbol, funds.token_contract_address,
            )

        logger.info("Job %s: executing offering '%s'", job_id, name)
        try:
            result = await offering.handlers.execute(requirements, self.handler_timeout)
        except ExecutionFailure as e:
            logger.exception("Job %s: %s failed for offering '%s'", job_id, e.capability, name)
            return await self._reject_for_failure(job_id, e)

        await self._deliver(job_id, result)
        return JobOutcome.DELIVERED

    async def _handle_transaction(self, event: JobEvent) -> JobOutcome:
        job_id = event.id
        request = extract_request(event)

        if request.offering_name is None:
            logger.info("Job %s in TRANSACTION but no offering resolved — skipping", job_id)
            return JobOutcome.SKIPPED

        name = request.offering_name
        try:
            offering = await self.registry.resolve(name)
            logger.info("Job %s: executing offering '%s' (TRANSACTION phase)", job_id, name)
            result = await offering.handlers.execute(request.requirements, self.handler_timeout)
        except (LoadError, ExecutionFailure):
            # Too late to reject; leave the job in place for retry/inspection
            logger.exception("Job %s: delivery failed for offering '%s'", job_id, name)
            return JobOutcome.FAILED

        await self._deliver(job_id, result)
        return JobOutcome.DELIVERED

    async def _reject_for_failure(self, job_id: int | str, error: ExecutionFailure) -> JobOutcome:
        await self._respond(job_id, accept=False, reason=f"Handler error: {error}")
        return JobOutcome.REJECTED

    async def _respond(self, job_id: int | str, accept: bool, reason: str) -> None:
        with _sink_call("respond", job_id):
            await self.sink.accept_or_reject(job_id, AcceptOrReject(accept=accept, reason=reason))
        logger.info("Job %s: %s (%s)", job_id, "accepted" if accept else "rejected", reason)

    async def _deliver(self, job_id: int | str, result: DeliverableResult) -> None:
        with _sink_call("deliver", job_id):
            await self.sink.deliver(
                job_id, Delivery(deliverable=result.deliverable, transfer=result.transfer)
            )
        logger.info("Job %s: delivered", job_id)

    def _check_requirement_schema(
        self, job_id: int | str, offering: ResolvedOffering, requirements: dict[str, Any]
    ) -> None:
        """Advisory only: a mismatch is logged, the job is not rejected for it."""
        schema = offering.descriptor.requirement
        if not schema:
            return
        try:
            jsonschema.validate(instance=requirements, schema=schema)
        except jsonschema.ValidationError as e:
            logger.warning(
                "Job %s: requirements do not match the '%s' schema: %s",
                job_id, offering.name, e.message,
            )
        except jsonschema.SchemaError as e:
            logger.warning("Offering '%s' has an invalid requirement schema: %s", offering.name, e.message)
        except Unresolvable as e:
            logger.warning("Offering '%s' has an invalid requirement schema: %s", offering.name, e)
