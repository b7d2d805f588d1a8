from __future__ import annotations


class CatalogError(Exception):
    """
    Base class for every error the data-access layer surfaces.

    The transport layer maps each subclass to its own status code, so
    callers never need to inspect storage exception text.
    """


class NotFoundError(CatalogError):
    def __init__(self, entity: str, identifier: object) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class ValidationError(CatalogError):
    """
    Payload failed field constraints.

    field_errors maps a dotted field path (e.g. "stats.0.stat_id") to the
    messages reported for it.
    """

    def __init__(self, field_errors: dict[str, list[str]]) -> None:
        self.field_errors = field_errors
        fields = ", ".join(sorted(field_errors)) or "payload"
        super().__init__(f"Invalid fields: {fields}")

    @classmethod
    def from_pydantic(cls, exc) -> ValidationError:
        field_errors: dict[str, list[str]] = {}
        for err in exc.errors():
            path = ".".join(str(part) for part in err.get("loc", ())) or "payload"
            field_errors.setdefault(path, []).append(err.get("msg", "invalid value"))
        return cls(field_errors)


class PersistenceError(CatalogError):
    """Storage operation failed after exhausting any configured retries."""


class ConstraintViolation(CatalogError):
    """Foreign-key or uniqueness violation reported by storage. Never retried."""


class UpstreamDataError(CatalogError):
    """A document from an external source lacks data the catalog requires."""

    def __init__(self, source: str, fields: list[str]) -> None:
        self.source = source
        self.fields = fields
        super().__init__(f"{source} response has missing or invalid fields: {', '.join(fields)}")
