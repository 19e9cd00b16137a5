"""acp-seller: run the seller runtime and manage local job offerings.

Commands:
  run                               serve the event receiver
  stop                              stop the running seller runtime
  check [name]                      show offerings, handler status and listing status
  init <name>                       scaffold a new offering directory
  create <name>                     validate an offering and register it with ACP
  delete <name>                     delist an offering from ACP (local files stay)
  process <name> <requirements...>  run one REQUEST pipeline locally (log sink)

Requirements for `process` are one JSON object or key=value pairs:
  acp-seller process donation_job name=Ada
  acp-seller process donation_job '{"name": "Ada"}'
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import time
from pathlib import Path
from typing import Any

from acp_seller.config import settings
from acp_seller.schemas.job import JobEvent, JobPhase
from acp_seller.services import local_config
from acp_seller.services.acp_api import AcpApiClient, AcpApiError, build_offering_payload
from acp_seller.services.actions import LogActionSink
from acp_seller.services.controller import JobLifecycleController, JobOutcome
from acp_seller.services.registry import (
    DESCRIPTOR_FILE,
    HANDLERS_FILE,
    FileOfferingStore,
    LoadError,
    OfferingNotFound,
    OfferingRegistry,
)

logger = logging.getLogger(__name__)

# ─── Colors ───

BOLD = "\033[1m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
RESET = "\033[0m"


def _ok(text: str) -> None:
    print(f"  {GREEN}✓{RESET} {text}")


def _fail(text: str) -> None:
    print(f"  {RED}✗{RESET} {text}")


def _heading(text: str) -> None:
    print(f"\n{BOLD}{text}{RESET}")
    print("─" * 50)


def parse_requirements(args: list[str]) -> dict[str, Any]:
    """Build a requirements dict from one JSON object or key=value pairs.

    Values of key=value pairs are JSON-decoded when possible (numbers, booleans)
    and kept as strings otherwise.
    """
    if len(args) == 1 and args[0].lstrip().startswith("{"):
        try:
            value = json.loads(args[0])
        except ValueError as e:
            raise ValueError(f"Invalid JSON requirements: {e}") from e
        if not isinstance(value, dict):
            raise ValueError("JSON requirements must be an object")
        return value

    requirements: dict[str, Any] = {}
    for arg in args:
        key, sep, raw = arg.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected key=value, got {arg!r}")
        try:
            requirements[key.strip()] = json.loads(raw)
        except ValueError:
            requirements[key.strip()] = raw
    return requirements


def _registry() -> OfferingRegistry:
    return OfferingRegistry(FileOfferingStore(settings.offerings_dir))


def _require_api_key() -> str | None:
    api_key = local_config.resolve_api_key()
    if not api_key:
        _fail("LITE_AGENT_API_KEY is not set (environment, .env or config.json)")
    return api_key


def _api_client(api_key: str) -> AcpApiClient:
    return AcpApiClient(settings.acp_api_url, api_key, timeout=settings.api_timeout_seconds)


# ─── Commands ───


def cmd_run(args: argparse.Namespace) -> int:
    import uvicorn

    running = local_config.read_pid()
    if running is not None:
        _fail(f"Seller runtime already running (PID {running})")
        return 1

    local_config.write_pid(os.getpid())
    try:
        uvicorn.run(
            "acp_seller.main:app",
            host=args.host or settings.host,
            port=args.port or settings.port,
            log_level=settings.log_level.lower(),
        )
    finally:
        local_config.remove_pid()
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    pid = local_config.read_pid()
    if pid is None:
        print("Seller runtime is not running.")
        local_config.remove_pid()
        return 0

    os.kill(pid, signal.SIGTERM)
    for _ in range(50):
        if not local_config.is_process_running(pid):
            break
        time.sleep(0.1)
    else:
        _fail(f"Seller runtime (PID {pid}) did not stop; still running")
        return 1

    local_config.remove_pid()
    _ok(f"Seller runtime (PID {pid}) stopped")
    return 0


async def _listed_names() -> set[str] | None:
    api_key = local_config.resolve_api_key()
    if not api_key:
        return None
    try:
        async with _api_client(api_key) as client:
            profile = await client.get_agent_info()
    except AcpApiError as e:
        print(f"  {YELLOW}!{RESET} Could not fetch ACP registration status: {e}")
        return None
    return set(profile.offering_names)


async def _check(name: str | None) -> int:
    registry = _registry()
    names = [name] if name else registry.list_names()

    pid = local_config.read_pid()
    _heading("Seller Process")
    print(f"  Status: running (PID {pid})" if pid else "  Status: not running")

    _heading("Job Offerings")
    if not names:
        print(f"  No offerings found in {settings.offerings_dir}/")
        return 0

    listed = await _listed_names()
    failures = 0
    for offering_name in names:
        print(f"\n  {BOLD}{offering_name}{RESET}")
        try:
            offering = await registry.resolve(offering_name)
        except LoadError as e:
            failures += 1
            for error in e.errors:
                _fail(error)
            continue

        descriptor = offering.descriptor
        print(f"    Description:    {descriptor.description}")
        print(f"    Job Fee:        {descriptor.job_fee} USDC")
        print(f"    Required Funds: {descriptor.required_funds}")
        print(f"    Handlers:       {', '.join(offering.handlers.capabilities)}")
        if listed is not None:
            print(f"    Status:         {'listed on ACP' if descriptor.name in listed else 'local only'}")
        if name and descriptor.requirement:
            print("    Requirement Schema:")
            for line in json.dumps(descriptor.requirement, indent=2).splitlines():
                print(f"      {line}")
    print()
    return 1 if failures else 0


HANDLERS_TEMPLATE = '''"""Handlers for the {name} offering."""


def execute_job(request):
    """Required: perform the service and return the deliverable."""
    return {{"deliverable": f"Received: {{request.get('input')}}"}}


def validate_requirements(request):
    """Optional: return False to reject the job before it is accepted."""
    return True
'''


def scaffold_offering(name: str) -> Path:
    """Write a starter offering.json and handlers.py for a new offering.

    Raises ValueError for a name that cannot be a directory, FileExistsError
    when the offering directory is already there.
    """
    directory = FileOfferingStore(settings.offerings_dir).offering_dir(name)
    if directory is None:
        raise ValueError(f"Invalid offering name: {name!r}")
    if directory.exists():
        raise FileExistsError(f"Offering directory already exists: {directory}")

    directory.mkdir(parents=True)
    descriptor = {
        "name": name,
        "description": "Describe what this service does",
        "jobFee": 1,
        "requiredFunds": False,
        "requirement": {
            "type": "object",
            "properties": {"input": {"type": "string", "description": "Describe the input"}},
            "required": ["input"],
        },
    }
    (directory / DESCRIPTOR_FILE).write_text(json.dumps(descriptor, indent=2) + "\n", encoding="utf-8")
    (directory / HANDLERS_FILE).write_text(HANDLERS_TEMPLATE.format(name=name), encoding="utf-8")
    return directory


async def _create(name: str) -> int:
    try:
        offering = await _registry().resolve(name)
    except OfferingNotFound:
        _fail(f"Offering '{name}' not found in {settings.offerings_dir}/")
        print(f"  Create it with: acp-seller init {name}")
        return 1
    except LoadError as e:
        _fail(f"Offering '{name}' is invalid:")
        for error in e.errors:
            print(f"      - {error}")
        return 1
    _ok(f"Offering '{name}' is valid ({', '.join(offering.handlers.capabilities)})")

    api_key = _require_api_key()
    if not api_key:
        return 1
    payload = build_offering_payload(offering.descriptor)
    try:
        async with _api_client(api_key) as client:
            await client.create_job_offering(payload)
    except AcpApiError as e:
        _fail(f"Registration failed: {e}")
        return 1
    _ok(f"Offering '{offering.descriptor.name}' registered on ACP")
    print("  Run `acp-seller run` to begin accepting jobs.")
    return 0


async def _delete(name: str) -> int:
    api_key = _require_api_key()
    if not api_key:
        return 1
    try:
        async with _api_client(api_key) as client:
            await client.delete_job_offering(name)
    except AcpApiError as e:
        _fail(f"Delisting failed: {e}")
        return 1
    _ok(f"Offering '{name}' delisted from ACP. Local files remain.")
    return 0


async def _process(name: str, requirements: dict[str, Any]) -> JobOutcome:
    sink = LogActionSink()
    controller = JobLifecycleController(
        _registry(), sink, handler_timeout=settings.handler_timeout_seconds
    )
    event = JobEvent(
        id=f"local-{int(time.time() * 1000)}",
        phase=JobPhase.REQUEST,
        context={"jobOfferingName": name, "serviceRequirements": requirements},
    )
    return await controller.handle(event)


def cmd_check(args: argparse.Namespace) -> int:
    return asyncio.run(_check(args.name))


def cmd_init(args: argparse.Namespace) -> int:
    try:
        directory = scaffold_offering(args.name)
    except (ValueError, FileExistsError) as e:
        _fail(str(e))
        return 1

    _heading("Offering Scaffolded")
    _ok(f"Created {directory}/")
    print(f"    - {DESCRIPTOR_FILE}  (edit name, description, fee, requirements)")
    print(f"    - {HANDLERS_FILE}    (implement execute_job)")
    print(f"\n  Next: edit the files, then run: acp-seller create {args.name}\n")
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    return asyncio.run(_create(args.name))


def cmd_delete(args: argparse.Namespace) -> int:
    return asyncio.run(_delete(args.name))


def cmd_process(args: argparse.Namespace) -> int:
    try:
        requirements = parse_requirements(args.requirements)
    except ValueError as e:
        _fail(str(e))
        return 2

    outcome = asyncio.run(_process(args.name, requirements))
    if outcome == JobOutcome.DELIVERED:
        _ok(f"Job {outcome.value}")
        return 0
    _fail(f"Job {outcome.value}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acp-seller",
        description="ACP seller runtime and offering tooling",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="serve the event receiver")
    run.add_argument("--host", default=None)
    run.add_argument("--port", type=int, default=None)
    run.set_defaults(func=cmd_run)

    stop = sub.add_parser("stop", help="stop the running seller runtime")
    stop.set_defaults(func=cmd_stop)

    check = sub.add_parser("check", help="show offerings and their status")
    check.add_argument("name", nargs="?")
    check.set_defaults(func=cmd_check)

    init = sub.add_parser("init", help="scaffold a new offering")
    init.add_argument("name")
    init.set_defaults(func=cmd_init)

    create = sub.add_parser("create", help="validate and register an offering")
    create.add_argument("name")
    create.set_defaults(func=cmd_create)

    delete = sub.add_parser("delete", help="delist an offering")
    delete.add_argument("name")
    delete.set_defaults(func=cmd_delete)

    process = sub.add_parser("process", help="run one job locally")
    process.add_argument("name")
    process.add_argument("requirements", nargs="*")
    process.set_defaults(func=cmd_process)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
