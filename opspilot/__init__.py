"""OpsPilot - confidence-tiered automation of operational events"""

from __future__ import annotations

__version__ = "0.1.0"


# Lazy imports so lightweight modules (models, policy) load without the engine
def __getattr__(name: str):
    """
    Lazy imports to avoid building the whole engine graph on package import.
    """
    if name == "AutomationEngine":
        from opspilot.automation.engine import AutomationEngine

        return AutomationEngine

    if name in ("Event", "Pattern", "PatternStore"):
        from opspilot import storage

        return getattr(storage, name)

    if name == "Database":
        from opspilot.infrastructure.database import Database

        return Database

    if name in ("Policy", "load_policy"):
        from opspilot.runtime import policy

        return getattr(policy, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "AutomationEngine",
    "Database",
    "Event",
    "Pattern",
    "PatternStore",
    "Policy",
    "load_policy",
]
