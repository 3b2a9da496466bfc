"""Registry and discovery for remediation playbooks."""

from __future__ import annotations

import importlib
import logging
import pkgutil
from collections.abc import Mapping
from dataclasses import dataclass, field

from contracts.remediation import (
    IdempotencyKeyFn,
    PlaybookDefinition,
    StepExecutor,
)
from services.remediation.errors import (
    MissingStepExecutorError,
    PlaybookNotFoundError,
    PlaybookValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_PLAYBOOK_PACKAGE = "services.remediation.playbooks"


@dataclass(frozen=True)
class PlaybookEntry:
    """A playbook definition bound to its step executors and key functions."""

    definition: PlaybookDefinition
    executors: Mapping[str, StepExecutor]
    idempotency_key_fns: Mapping[str, IdempotencyKeyFn] = field(default_factory=dict)

    @property
    def playbook_id(self) -> str:
        return self.definition.id


class PlaybookRegistry:
    """Read-only catalogue of playbooks keyed by id.

    Entries are never replaced: a behavioural change ships as a new version,
    and registering an id twice is an error.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PlaybookEntry] = {}

    def __contains__(self, playbook_id: object) -> bool:
        return playbook_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, entry: PlaybookEntry) -> PlaybookEntry:
        """Register one entry; every step must have a bound executor."""
        playbook_id = entry.definition.id
        if playbook_id in self._entries:
            raise PlaybookValidationError(f"Playbook already registered for '{playbook_id}'")
        for step in entry.definition.steps:
            if step.step_id not in entry.executors:
                raise MissingStepExecutorError(playbook_id, step.step_id)
        unknown = sorted(set(entry.executors) - {s.step_id for s in entry.definition.steps})
        if unknown:
            raise PlaybookValidationError(
                f"Executors bound to unknown steps of '{playbook_id}': {', '.join(unknown)}"
            )
        self._entries[playbook_id] = entry
        return entry

    def get(self, playbook_id: str) -> PlaybookEntry | None:
        """Return the entry for a playbook id, if registered."""
        return self._entries.get(str(playbook_id or "").strip())

    def require(self, playbook_id: str) -> PlaybookEntry:
        """Return the entry for a playbook id or raise PlaybookNotFoundError."""
        entry = self.get(playbook_id)
        if entry is None:
            raise PlaybookNotFoundError(playbook_id)
        return entry

    def for_category(self, category: str) -> list[PlaybookEntry]:
        """Return entries applicable to an incident category, in registration order."""
        return [e for e in self._entries.values() if category in e.definition.applicable_categories]

    def list_ids(self) -> list[str]:
        """Return registered playbook ids in registration order."""
        return list(self._entries)

    def definitions(self) -> list[PlaybookDefinition]:
        return [e.definition for e in self._entries.values()]

    def discover(self, package_name: str = DEFAULT_PLAYBOOK_PACKAGE) -> None:
        """Import all modules under a package and register their ``PLAYBOOK_ENTRY``."""
        package = importlib.import_module(package_name)
        package_path = getattr(package, "__path__", None)
        if package_path is None:
            return
        prefix = package.__name__ + "."
        for module_info in sorted(pkgutil.walk_packages(package_path, prefix), key=lambda m: m.name):
            module = importlib.import_module(module_info.name)
            entry = getattr(module, "PLAYBOOK_ENTRY", None)
            if entry is None:
                continue
            if not isinstance(entry, PlaybookEntry):
                raise PlaybookValidationError(f"{module_info.name}.PLAYBOOK_ENTRY is not a PlaybookEntry")
            self.register(entry)
            logger.debug("Registered playbook", extra={"playbook_id": entry.playbook_id})


def build_default_registry() -> PlaybookRegistry:
    """Build a registry populated with the built-in playbooks."""
    registry = PlaybookRegistry()
    registry.discover()
    return registry
