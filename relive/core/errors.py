"""
Relive Errors

Exceptions raised to the host. Everything that happens while a migration pass
is running is demoted to a result entry instead; these signal misconfiguration.
"""

from __future__ import annotations

from typing import Any, List, Optional


class ReliveError(Exception):
    """Base class for all relive errors."""


class UpgraderRegistrationError(ReliveError):
    """Raised when one or more upgraders could not be registered."""

    def __init__(self, message: str, errors: Optional[List[Exception]] = None):
        self.message = message
        self.errors = list(errors or [])
        super().__init__(message)

    @classmethod
    def aggregate(cls, errors: List[Exception]) -> "UpgraderRegistrationError":
        """Combine several registration failures into one error."""
        if len(errors) == 1 and isinstance(errors[0], UpgraderRegistrationError):
            return errors[0]

        details = "; ".join(str(e) for e in errors)
        return cls(f"Failed to register {len(errors)} upgrader(s): {details}", errors)


class UpgraderOrderingError(ReliveError):
    """Raised when upgrader ordering constraints contradict each other."""

    def __init__(self, first: Any, second: Any):
        self.first = first
        self.second = second
        super().__init__(
            f"Contradicting ordering constraints between {_name(first)} and {_name(second)}"
        )


class UpgraderNotFoundError(ReliveError, KeyError):
    """Raised when an upgrader of a given type isn't registered."""

    def __init__(self, upgrader_type: type):
        self.upgrader_type = upgrader_type
        super().__init__(f"Upgrader of type {_name(upgrader_type)} not found")

    def __str__(self) -> str:
        return self.args[0]


class SwapCycleError(ReliveError):
    """Raised when pending module replacements form a cycle."""

    def __init__(self, module_name: str):
        self.module_name = module_name
        super().__init__(f"Cycle detected in module replacements starting at '{module_name}'")


class DefaultRecoveryError(ReliveError):
    """Raised when a field initializer declaration is invalid."""

    def __init__(self, owner: type, field_name: str, message: str):
        self.owner = owner
        self.field_name = field_name
        super().__init__(f"{_name(owner)}.{field_name}: {message}")


def _name(obj: Any) -> str:
    return getattr(obj, "__qualname__", None) or repr(obj)
