"""Offering registry: resolves an offering name to its descriptor and handlers.

Each offering lives in its own directory under the offerings root:

    offerings/<name>/offering.json   descriptor
    offerings/<name>/handlers.py     execute_job (+ validate_requirements,
                                     request_additional_funds)

Resolution validates the descriptor and the handler contract before the entry
is cached. Successful resolutions are memoized for the process lifetime;
failures are not, so a fixed offering resolves on the next attempt.
"""

import asyncio
import importlib.util
import json
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Protocol

from pydantic import ValidationError

from acp_seller.schemas.offering import OfferingDescriptor, describe_validation_error
from acp_seller.services.handlers import (
    EXECUTE_JOB,
    REQUEST_ADDITIONAL_FUNDS,
    VALIDATE_REQUIREMENTS,
    HandlerSet,
    exported_capability,
)

logger = logging.getLogger(__name__)

DESCRIPTOR_FILE = "offering.json"
HANDLERS_FILE = "handlers.py"


class LoadError(Exception):
    """Raised when an offering cannot be resolved. Carries every violated rule."""

    def __init__(self, offering_name: str, errors: list[str]) -> None:
        self.offering_name = offering_name
        self.errors = list(errors)
        super().__init__(f"Offering '{offering_name}': {'; '.join(self.errors)}")


class OfferingNotFound(LoadError):
    pass


class InvalidDescriptor(LoadError):
    pass


class InvalidHandlers(LoadError):
    pass


class ContractViolation(InvalidHandlers):
    """requiredFunds and request_additional_funds disagree."""


class OfferingStore(Protocol):
    def exists(self, name: str) -> bool: ...

    def load_descriptor(self, name: str) -> Any: ...

    def load_handlers(self, name: str) -> ModuleType | None: ...

    def list_names(self) -> list[str]: ...


class FileOfferingStore:
    """Offerings stored as directories on the local filesystem."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"FileOfferingStore({str(self.root)!r})"

    def offering_dir(self, name: str) -> Path | None:
        # Names are single path segments; anything else cannot exist here
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            return None
        return self.root / name

    def exists(self, name: str) -> bool:
        directory = self.offering_dir(name)
        return directory is not None and (directory / DESCRIPTOR_FILE).is_file()

    def load_descriptor(self, name: str) -> Any:
        path = self.root / name / DESCRIPTOR_FILE
        return json.loads(path.read_text(encoding="utf-8"))

    def load_handlers(self, name: str) -> ModuleType | None:
        path = self.root / name / HANDLERS_FILE
        if not path.is_file():
            return None

        module_name = "acp_seller_offerings." + re.sub(r"\W", "_", name)
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load handlers from {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        return module

    def list_names(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and (entry / DESCRIPTOR_FILE).is_file()
        )


@dataclass(frozen=True)
class ResolvedOffering:
    name: str
    descriptor: OfferingDescriptor
    handlers: HandlerSet


def validate_descriptor(offering_name: str, raw: Any) -> OfferingDescriptor:
    """Parse offering.json content, reporting all field violations together."""
    if not isinstance(raw, dict):
        raise InvalidDescriptor(offering_name, [f"{DESCRIPTOR_FILE} must contain a JSON object"])
    try:
        return OfferingDescriptor.model_validate(raw)
    except ValidationError as e:
        raise InvalidDescriptor(offering_name, describe_validation_error(e)) from e


def check_handler_contract(
    offering_name: str, descriptor: OfferingDescriptor, module: ModuleType | object | None
) -> HandlerSet:
    """Enforce requiredFunds <=> request_additional_funds and bind the handlers."""
    if module is None:
        raise InvalidHandlers(offering_name, [f"{HANDLERS_FILE} not found"])

    errors = []
    if exported_capability(module, EXECUTE_JOB) is None:
        errors.append(f'handlers must export an "{EXECUTE_JOB}" function')

    contract_errors = []
    has_funds = exported_capability(module, REQUEST_ADDITIONAL_FUNDS) is not None
    if descriptor.required_funds and not has_funds:
        contract_errors.append(
            f'"requiredFunds" is true, so handlers must export "{REQUEST_ADDITIONAL_FUNDS}"'
        )
    if not descriptor.required_funds and has_funds:
        contract_errors.append(
            f'"requiredFunds" is false, so handlers must NOT export "{REQUEST_ADDITIONAL_FUNDS}"'
        )

    if errors:
        raise InvalidHandlers(offering_name, errors + contract_errors)
    if contract_errors:
        raise ContractViolation(offering_name, contract_errors)

    if exported_capability(module, VALIDATE_REQUIREMENTS) is None:
        logger.debug("Offering '%s' has no %s; requests are not validated", offering_name, VALIDATE_REQUIREMENTS)
    return HandlerSet.from_module(module)


class OfferingRegistry:
    def __init__(self, store: OfferingStore) -> None:
        self.store = store
        self._cache: dict[str, ResolvedOffering] = {}
        # Per-name load locks live only while someone is resolving that name
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def resolve(self, name: str) -> ResolvedOffering:
        """Resolve an offering by name, loading it on first use.

        Concurrent first resolutions of the same name wait on one load.
        Raises a LoadError subclass when the offering is missing or broken.
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(name, asyncio.Lock())
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                cached = self._cache.get(name)
                if cached is not None:
                    return cached
                resolved = await asyncio.to_thread(self._load, name)
                self._cache[name] = resolved
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._locks[name]

        logger.info(
            "Loaded offering '%s' (requiredFunds=%s, handlers=%s)",
            name, resolved.descriptor.required_funds, ", ".join(resolved.handlers.capabilities),
        )
        return resolved

    def _load(self, name: str) -> ResolvedOffering:
        if not self.store.exists(name):
            raise OfferingNotFound(name, [f"No offering named '{name}' in {self.store!r}"])

        try:
            raw = self.store.load_descriptor(name)
        except (OSError, ValueError) as e:
            raise InvalidDescriptor(name, [f"Cannot read {DESCRIPTOR_FILE}: {e}"]) from e
        descriptor = validate_descriptor(name, raw)
        if descriptor.name != name:
            logger.warning(
                "Offering directory '%s' declares name '%s'; jobs are routed by directory name",
                name, descriptor.name,
            )

        try:
            module = self.store.load_handlers(name)
        except Exception as e:
            raise InvalidHandlers(name, [f"Failed to import {HANDLERS_FILE}: {e}"]) from e
        handlers = check_handler_contract(name, descriptor, module)
        return ResolvedOffering(name=name, descriptor=descriptor, handlers=handlers)

    def list_names(self) -> list[str]:
        return self.store.list_names()

    def is_cached(self, name: str) -> bool:
        return name in self._cache

    def invalidate(self, name: str | None = None) -> None:
        """Forget memoized resolutions (one name, or all) so the next resolve reloads."""
        if name is None:
            self._cache.clear()
        else:
            self._cache.pop(name, None)
