"""
Error taxonomy for the query and lifecycle engine.

Every EngineError is recovered at the service boundary and turned into a
failure envelope. ConfigurationError is raised while the registry is built and
is fatal at startup.
"""
from typing import Optional


class EngineError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, detail: str, message: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.message = message

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "detail": self.detail,
            "retryable": self.retryable,
        }


class ValidationError(EngineError):
    """Missing or malformed field, or a duplicate unique value."""


class NotFoundError(EngineError):
    status_code = 404


class InvalidFilterError(EngineError):
    """Unknown filter or sort field, or a malformed pagination parameter."""


class StorageError(EngineError):
    status_code = 503
    retryable = True


class ConfigurationError(Exception):
    pass


def describe_errors(exc) -> str:
    """One line per pydantic error, `loc: msg`."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)
