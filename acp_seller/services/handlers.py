"""Handler Set: the user-authored capabilities bound to one offering.

Capabilities may be plain functions or coroutine functions. Coroutines are
awaited on the event loop; plain functions run in a worker thread so a slow
handler for one job never stalls the pipelines of other jobs.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import ModuleType
from typing import Any

from pydantic import ValidationError

from acp_seller.schemas.offering import DeliverableResult, FundsRequest

logger = logging.getLogger(__name__)

EXECUTE_JOB = "execute_job"
VALIDATE_REQUIREMENTS = "validate_requirements"
REQUEST_ADDITIONAL_FUNDS = "request_additional_funds"

Capability = Callable[[dict[str, Any]], Any]


class ExecutionFailure(Exception):
    """Raised when a handler capability fails or returns something unusable."""

    def __init__(self, capability: str, message: str) -> None:
        super().__init__(message)
        self.capability = capability


class HandlerTimeout(ExecutionFailure):
    """Raised when a capability does not finish within the configured timeout."""

    def __init__(self, capability: str, timeout: float) -> None:
        super().__init__(capability, f"{capability} timed out after {timeout:g}s")
        self.timeout = timeout


async def invoke_capability(
    fn: Capability,
    capability: str,
    requirements: dict[str, Any],
    timeout: float | None = None,
) -> Any:
    """Call one capability with the job requirements.

    Any error raised by the handler is re-raised as ExecutionFailure. A thread
    running a timed-out sync handler cannot be interrupted; it is abandoned.
    """
    try:
        async with asyncio.timeout(timeout) as deadline:
            if inspect.iscoroutinefunction(fn):
                result = await fn(requirements)
            else:
                result = await asyncio.to_thread(fn, requirements)
            if inspect.isawaitable(result):
                result = await result
    except TimeoutError as e:
        if deadline.expired():
            raise HandlerTimeout(capability, timeout) from e  # type: ignore[arg-type]
        raise ExecutionFailure(capability, str(e) or type(e).__name__) from e
    except (Exception, SystemExit) as e:
        # A handler calling sys.exit() fails its job, not the runtime
        raise ExecutionFailure(capability, str(e) or type(e).__name__) from e
    return result


@dataclass(frozen=True)
class HandlerSet:
    execute_job: Capability
    validate_requirements: Capability | None = None
    request_additional_funds: Capability | None = None

    @classmethod
    def from_module(cls, module: ModuleType | object) -> "HandlerSet":
        """Bind the capabilities exported by a handler module.

        Callers are expected to have checked the contract first (see the
        offering registry); non-callable attributes are treated as absent.
        """
        return cls(
            execute_job=getattr(module, EXECUTE_JOB),
            validate_requirements=exported_capability(module, VALIDATE_REQUIREMENTS),
            request_additional_funds=exported_capability(module, REQUEST_ADDITIONAL_FUNDS),
        )

    @property
    def capabilities(self) -> list[str]:
        names = [EXECUTE_JOB]
        if self.validate_requirements is not None:
            names.append(VALIDATE_REQUIREMENTS)
        if self.request_additional_funds is not None:
            names.append(REQUEST_ADDITIONAL_FUNDS)
        return names

    async def validate(self, requirements: dict[str, Any], timeout: float | None = None) -> bool:
        """Run validate_requirements. Offerings without a validator accept everything."""
        if self.validate_requirements is None:
            return True
        result = await invoke_capability(
            self.validate_requirements, VALIDATE_REQUIREMENTS, requirements, timeout
        )
        if isinstance(result, Mapping) and "valid" in result:
            return bool(result["valid"])
        return bool(result)

    async def request_funds(
        self, requirements: dict[str, Any], timeout: float | None = None
    ) -> FundsRequest:
        if self.request_additional_funds is None:
            raise ExecutionFailure(
                REQUEST_ADDITIONAL_FUNDS, "Offering does not define request_additional_funds"
            )
        result = await invoke_capability(
            self.request_additional_funds, REQUEST_ADDITIONAL_FUNDS, requirements, timeout
        )
        try:
            return FundsRequest.from_handler(result)
        except (TypeError, ValidationError) as e:
            raise ExecutionFailure(REQUEST_ADDITIONAL_FUNDS, f"Invalid funds request: {e}") from e

    async def execute(
        self, requirements: dict[str, Any], timeout: float | None = None
    ) -> DeliverableResult:
        result = await invoke_capability(self.execute_job, EXECUTE_JOB, requirements, timeout)
        try:
            return DeliverableResult.from_handler(result)
        except (TypeError, ValidationError) as e:
            raise ExecutionFailure(EXECUTE_JOB, f"Invalid deliverable: {e}") from e


def exported_capability(module: ModuleType | object, name: str) -> Capability | None:
    fn = getattr(module, name, None)
    return fn if callable(fn) else None
