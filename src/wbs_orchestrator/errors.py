"""Error taxonomy shared by the remote gateway, the WBS engine and provisioning."""

from __future__ import annotations

from typing import Any


class WbsError(Exception):
    """Base exception for wbs-orchestrator errors."""

    pass


class RemoteServiceError(WbsError):
    """A remote spreadsheet service call failed."""

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        full_message = message
        if response:
            text = str(response)
            full_message = f"{message} - Response: {text[:500]}"
        super().__init__(full_message)
        self.status_code = status_code
        self.response = response

    @property
    def retryable(self) -> bool:
        """Rate limits and server errors are transient; everything else is not."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class AuthError(RemoteServiceError):
    """Remote credential rejected (401/403). Never retried."""

    pass


class RateLimited(RemoteServiceError):
    """Remote service asked us to slow down (429)."""

    def __init__(self, message: str = "Rate limit exceeded", response: Any = None):
        super().__init__(message, 429, response)


class NotFound(RemoteServiceError):
    """Remote object no longer exists (deleted out-of-band)."""

    def __init__(self, message: str, response: Any = None):
        super().__init__(message, 404, response)


class ValidationError(WbsError):
    """Malformed local input, rejected before any remote call."""

    pass


class CycleDetected(ValidationError):
    """A parent chain loops back on itself."""

    def __init__(self, items: list[str]):
        self.items = items
        super().__init__(f"Cycle detected in hierarchy: {' -> '.join(items)}")


class IdempotencyConflict(WbsError):
    """An identical operation is already in flight in this process."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Operation already in flight: {key}")


class PartialProvisioningFailure(WbsError):
    """A provisioning step failed; earlier steps were not rolled back."""

    def __init__(
        self,
        step: str,
        project_code: str,
        cause: BaseException | str,
        result: Any = None,
    ):
        self.step = step
        self.project_code = project_code
        self.cause = cause
        self.result = result
        super().__init__(f"Provisioning of {project_code} failed at {step}: {cause}")


class ProjectNotFound(WbsError):
    """No live project matches the given id or code."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Project not found: {ref}")
