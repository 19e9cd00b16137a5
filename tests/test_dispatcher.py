"""Tests for concurrent per-event pipelines."""

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from acp_seller.schemas.job import JobPhase
from acp_seller.services.controller import JobLifecycleController, JobOutcome
from acp_seller.services.dispatcher import JobDispatcher
from acp_seller.services.registry import OfferingRegistry
from tests.conftest import RecordingActionSink, make_event, write_offering

GATED_HANDLERS = """
import asyncio

gate = asyncio.Event()


async def execute_job(request):
    if request.get("wait"):
        await gate.wait()
    return request["label"]
"""


@pytest.mark.asyncio
async def test_submit_runs_pipeline(
    dispatcher: JobDispatcher, sink: RecordingActionSink, offerings_root: Path
) -> None:
    write_offering(offerings_root, "donation")
    assert dispatcher.submit(make_event(offering="donation", requirements={"name": "Ada"})) is True
    await dispatcher.drain()
    assert sink.names == ["respond", "deliver"]
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_slow_job_does_not_delay_others(
    registry: OfferingRegistry, sink: RecordingActionSink, offerings_root: Path
) -> None:
    write_offering(offerings_root, "gated", handlers=GATED_HANDLERS)
    dispatcher = JobDispatcher(JobLifecycleController(registry, sink))

    dispatcher.submit(make_event(job_id=1, offering="gated", requirements={"label": "slow", "wait": True}))
    dispatcher.submit(make_event(job_id=2, offering="gated", requirements={"label": "fast"}))

    for _ in range(100):
        if sink.of("deliver"):
            break
        await asyncio.sleep(0.01)
    assert [d.deliverable for d in sink.of("deliver")] == ["fast"]
    assert dispatcher.in_flight == 1

    resolved = await registry.resolve("gated")
    module_globals = resolved.handlers.execute_job.__globals__
    module_globals["gate"].set()
    await dispatcher.drain()
    assert [d.deliverable for d in sink.of("deliver")] == ["fast", "slow"]


@pytest.mark.asyncio
async def test_redelivery_reprocessed_by_default(
    dispatcher: JobDispatcher, sink: RecordingActionSink, offerings_root: Path
) -> None:
    write_offering(offerings_root, "donation")
    event = make_event(offering="donation", requirements={})
    assert dispatcher.submit(event) is True
    assert dispatcher.submit(event) is True
    await dispatcher.drain()
    assert sink.names.count("deliver") == 2


@pytest.mark.asyncio
async def test_dedupe_skips_same_job_and_phase(
    controller: JobLifecycleController, sink: RecordingActionSink, offerings_root: Path
) -> None:
    write_offering(offerings_root, "donation")
    dispatcher = JobDispatcher(controller, dedupe=True)

    assert dispatcher.submit(make_event(offering="donation", requirements={})) is True
    assert dispatcher.submit(make_event(offering="donation", requirements={})) is False
    assert dispatcher.submit(make_event(JobPhase.TRANSACTION, offering="donation", requirements={})) is True
    await dispatcher.drain()
    assert sink.names == ["respond", "deliver", "deliver"]


@pytest.mark.asyncio
async def test_dedupe_allows_redelivery_after_failed_transaction(
    controller: JobLifecycleController, sink: RecordingActionSink, offerings_root: Path
) -> None:
    dispatcher = JobDispatcher(controller, dedupe=True)
    event = make_event(JobPhase.TRANSACTION, offering="donation", requirements={"name": "Ada"})

    # Offering not there yet: the TRANSACTION pass fails and emits nothing
    assert dispatcher.submit(event) is True
    await dispatcher.drain()
    assert sink.actions == []

    write_offering(offerings_root, "donation")
    assert dispatcher.submit(event) is True
    await dispatcher.drain()
    assert sink.names == ["deliver"]

    assert dispatcher.submit(event) is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "first",
    [JobOutcome.FAILED, JobOutcome.ACTION_FAILED, RuntimeError("controller bug")],
    ids=["failed", "action-failed", "unexpected-error"],
)
async def test_dedupe_forgets_non_terminal_passes(first: object) -> None:
    controller = AsyncMock(spec=JobLifecycleController)
    controller.handle.side_effect = [first, JobOutcome.DELIVERED]
    dispatcher = JobDispatcher(controller, dedupe=True)

    assert dispatcher.submit(make_event()) is True
    await dispatcher.drain()
    assert dispatcher.submit(make_event()) is True
    await dispatcher.drain()
    assert dispatcher.submit(make_event()) is False
    assert controller.handle.await_count == 2


@pytest.mark.asyncio
async def test_unexpected_error_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    controller = AsyncMock(spec=JobLifecycleController)
    controller.handle.side_effect = RuntimeError("controller bug")
    dispatcher = JobDispatcher(controller)

    with caplog.at_level(logging.ERROR):
        dispatcher.submit(make_event())
        await dispatcher.drain()

    assert "Unexpected error processing job 1001" in caplog.text
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_shutdown_rejects_new_events() -> None:
    controller = AsyncMock(spec=JobLifecycleController)
    controller.handle.return_value = JobOutcome.IGNORED
    dispatcher = JobDispatcher(controller)

    dispatcher.submit(make_event())
    await dispatcher.shutdown()

    assert dispatcher.closed
    assert dispatcher.submit(make_event(job_id=2)) is False
    assert controller.handle.await_count == 1


@pytest.mark.asyncio
async def test_shutdown_cancels_stragglers() -> None:
    started = asyncio.Event()

    async def hang(event):  # type: ignore[no-untyped-def]
        started.set()
        await asyncio.sleep(60)

    controller = AsyncMock(spec=JobLifecycleController)
    controller.handle.side_effect = hang
    dispatcher = JobDispatcher(controller)

    dispatcher.submit(make_event())
    await started.wait()
    await dispatcher.shutdown(timeout=0.05)
    assert dispatcher.in_flight == 0
