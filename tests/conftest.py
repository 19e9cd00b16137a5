"""Test configuration and fixtures.

Offerings are written into a per-test directory under tmp_path; the action sink
is replaced by a recorder so tests can assert on the exact protocol actions a
job produced.
"""

import json
import textwrap
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from acp_seller.config import settings
from acp_seller.main import app
from acp_seller.routers.events import get_dispatcher
from acp_seller.schemas.job import AcceptOrReject, Delivery, JobEvent, JobPhase, PaymentRequest
from acp_seller.services.actions import ActionError
from acp_seller.services.controller import JobLifecycleController
from acp_seller.services.dispatcher import JobDispatcher
from acp_seller.services.registry import FileOfferingStore, OfferingRegistry


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path: Path) -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "offerings_dir", tmp_path / "offerings")
    object.__setattr__(settings, "config_path", tmp_path / "config.json")
    object.__setattr__(settings, "lite_agent_api_key", "")
    object.__setattr__(settings, "action_backend", "log")
    object.__setattr__(settings, "handler_timeout_seconds", None)
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Offerings on disk
# ---------------------------------------------------------------------------

DONATION_HANDLERS = """
def execute_job(request):
    return {"deliverable": f"Thank you {request.get('name') or 'Anonymous'}"}
"""

FUNDED_HANDLERS = """
def validate_requirements(request):
    return request.get("amount", 0) > 0


def request_additional_funds(request):
    return {"amount": request["amount"], "ca": "0xUSDC", "symbol": "USDC"}


async def execute_job(request):
    return {"deliverable": "funded", "transfer": {"contractAddress": "0xUSDC", "amount": 1}}
"""


def make_descriptor(name: str, **overrides: Any) -> dict[str, Any]:
    """Factory for offering.json content."""
    descriptor: dict[str, Any] = {
        "name": name,
        "description": f"{name} offering",
        "jobFee": 1,
        "requiredFunds": False,
    }
    descriptor.update(overrides)
    return descriptor


def write_offering(
    root: Path,
    name: str,
    handlers: str | None = DONATION_HANDLERS,
    descriptor: dict[str, Any] | str | None = None,
    **overrides: Any,
) -> Path:
    """Create <root>/<name>/ with offering.json and (optionally) handlers.py."""
    directory = root / name
    directory.mkdir(parents=True, exist_ok=True)
    if descriptor is None:
        descriptor = make_descriptor(name, **overrides)
    text = descriptor if isinstance(descriptor, str) else json.dumps(descriptor)
    (directory / "offering.json").write_text(text, encoding="utf-8")
    if handlers is not None:
        (directory / "handlers.py").write_text(textwrap.dedent(handlers), encoding="utf-8")
    return directory


@pytest.fixture
def offerings_root() -> Path:
    root = settings.offerings_dir
    root.mkdir(parents=True, exist_ok=True)
    return root


class CountingStore(FileOfferingStore):
    """FileOfferingStore that counts handler module loads."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.loads: dict[str, int] = {}

    def load_handlers(self, name: str):  # type: ignore[no-untyped-def]
        self.loads[name] = self.loads.get(name, 0) + 1
        return super().load_handlers(name)


@pytest.fixture
def store(offerings_root: Path) -> CountingStore:
    return CountingStore(offerings_root)


@pytest.fixture
def registry(store: CountingStore) -> OfferingRegistry:
    return OfferingRegistry(store)


# ---------------------------------------------------------------------------
# Action sink recorder
# ---------------------------------------------------------------------------


class RecordingActionSink:
    """Records every protocol action; can be told to fail a given action."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.actions: list[tuple[str, int | str, Any]] = []
        self.fail_on = fail_on or set()
        self.closed = False

    def _record(self, action: str, job_id: int | str, params: Any) -> None:
        if action in self.fail_on:
            raise ActionError(f"{action} refused")
        self.actions.append((action, job_id, params))

    async def accept_or_reject(self, job_id: int | str, params: AcceptOrReject) -> None:
        self._record("respond", job_id, params)

    async def request_payment(self, job_id: int | str, params: PaymentRequest) -> None:
        self._record("payment", job_id, params)

    async def deliver(self, job_id: int | str, params: Delivery) -> None:
        self._record("deliver", job_id, params)

    async def aclose(self) -> None:
        self.closed = True

    def of(self, action: str) -> list[Any]:
        return [params for name, _, params in self.actions if name == action]

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.actions]


@pytest.fixture
def sink() -> RecordingActionSink:
    return RecordingActionSink()


@pytest.fixture
def controller(registry: OfferingRegistry, sink: RecordingActionSink) -> JobLifecycleController:
    return JobLifecycleController(registry, sink)


@pytest.fixture
def dispatcher(controller: JobLifecycleController) -> JobDispatcher:
    return JobDispatcher(controller)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(dispatcher: JobDispatcher) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with the dispatcher dependency overridden."""
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await dispatcher.drain()
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_event(
    phase: JobPhase | int | str = JobPhase.REQUEST,
    job_id: int | str = 1001,
    offering: str | None = None,
    requirements: dict[str, Any] | None = None,
    **fields: Any,
) -> JobEvent:
    """Factory for an inbound job event."""
    context: dict[str, Any] = fields.pop("context", {})
    if offering is not None:
        context["jobOfferingName"] = offering
    if requirements is not None:
        context["serviceRequirements"] = requirements
    return JobEvent.model_validate(
        {"id": job_id, "phase": phase, "clientAddress": "0xClient", "price": 1, "context": context, **fields}
    )
