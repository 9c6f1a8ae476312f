"""Error taxonomy for recipe validation, resolution, dispatch, and execution."""

from __future__ import annotations

from typing import Any


class GenflowError(Exception):
    """Base error. Carries a machine-readable kind and code for polling clients."""

    kind = "error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind.upper()

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "code": self.code}


class ValidationError(GenflowError):
    """A recipe violates a structural invariant. Raised before any execution exists."""

    kind = "validation"

    def __init__(self, violation: str, message: str, nodes: list[str] | None = None):
        super().__init__(message, code=violation.upper())
        self.violation = violation
        self.nodes = nodes or []

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["violation"] = self.violation
        d["nodes"] = self.nodes
        return d


class ResolutionError(GenflowError):
    """A node's inputs or prompt could not be resolved. The node fails without dispatching."""

    kind = "resolution"

    def __init__(self, message: str, missing: list[str] | None = None, code: str | None = None):
        super().__init__(message, code=code)
        self.missing = missing or []


class AdaptorError(GenflowError):
    """Permanent provider failure: no config, bad credentials, unhealthy, rejected request."""

    kind = "adaptor"


class TransientProviderError(GenflowError):
    """Retryable provider failure (rate limiting, connection reset, 5xx)."""

    kind = "transient"


class DispatchTimeout(TransientProviderError):
    kind = "timeout"


class ExecutionError(GenflowError):
    """Execution-level abort: overall timeout exceeded or cancelled mid-flight."""

    kind = "execution"


class NotFoundError(GenflowError):
    kind = "not_found"


class StateTransitionError(GenflowError):
    """Illegal lifecycle transition or a second write of a node result."""

    kind = "state"
