"""Domain pattern modules and the per-engine module registry."""

from __future__ import annotations

from opspilot.matching.modules.access import AccessPatternModule
from opspilot.matching.modules.base import PatternModule
from opspilot.matching.modules.booking import BookingPatternModule
from opspilot.matching.modules.decision import DecisionPatternModule
from opspilot.matching.modules.error import ErrorPatternModule
from opspilot.observability.logging import get_logger
from opspilot.runtime.policy import Policy
from opspilot.storage.models import Event
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)

DEFAULT_MODULES: tuple[type[PatternModule], ...] = (
    ErrorPatternModule,
    DecisionPatternModule,
    BookingPatternModule,
    AccessPatternModule,
)


class ModuleRegistry:
    """Named domain modules owned by one engine instance."""

    def __init__(self) -> None:
        self._modules: dict[str, PatternModule] = {}

    @classmethod
    def with_defaults(cls, store: PatternStore, policy: Policy) -> ModuleRegistry:
        registry = cls()
        for module_cls in DEFAULT_MODULES:
            registry.register(module_cls(store, policy))
        return registry

    def register(self, module: PatternModule) -> None:
        if module.name in self._modules:
            logger.warning("Replacing pattern module %s", module.name)
        self._modules[module.name] = module

    def unregister(self, name: str) -> PatternModule | None:
        return self._modules.pop(name, None)

    def get(self, name: str) -> PatternModule | None:
        return self._modules.get(name)

    def capable(self, kind: str, event: Event | None = None) -> list[PatternModule]:
        return [m for m in self._modules.values() if m.can_handle(kind, event)]

    def names(self) -> list[str]:
        return list(self._modules)

    def __len__(self) -> int:
        return len(self._modules)


__all__ = [
    "AccessPatternModule",
    "BookingPatternModule",
    "DecisionPatternModule",
    "ErrorPatternModule",
    "ModuleRegistry",
    "PatternModule",
]
