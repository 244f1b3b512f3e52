"""Exception hierarchy shared by the ledger services."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger errors."""


class ValidationError(LedgerError):
    """Raised when an event, entity profile or preference payload is malformed."""


class MissingReferenceError(LedgerError):
    """Raised when a projection needs an entity profile that does not exist."""

    def __init__(self, entity_id: str, entity_kind: str) -> None:
        super().__init__(f"No entity profile for {entity_kind}:{entity_id}")
        self.entity_id = entity_id
        self.entity_kind = entity_kind


class ConfigurationError(LedgerError):
    """Raised at startup for invalid half-lives, weights or dimensions."""


class PersistenceError(LedgerError):
    """Raised when a write to the ledger store fails."""


class LeaseUnavailableError(LedgerError):
    """Raised when another batch run already holds the run lease."""

    def __init__(self, name: str, holder: str | None = None) -> None:
        message = f"Run lease {name!r} is held"
        if holder:
            message += f" by {holder}"
        super().__init__(message)
        self.name = name
        self.holder = holder
