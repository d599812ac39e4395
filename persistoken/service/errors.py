from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries a stable ``error_code`` so callers (a login
    view, the forget-all CLI, a background job) can branch on the kind of
    failure without parsing messages:
    - generation_unavailable
    - rotation_write_failed
    - bulk_sweep_partial_failure
    - conflict
    """

    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class GenerationUnavailable(ServiceError):
    """Randomness source or hardening provider cannot produce a token."""
    error_code = "generation_unavailable"


class RotationWriteFailed(ServiceError):
    """The record write that completes a token rotation failed."""
    error_code = "rotation_write_failed"


class BulkSweepPartialFailure(ServiceError):
    """One or more rotations failed during a forget-all sweep."""
    error_code = "bulk_sweep_partial_failure"


class AccountExistsError(ServiceError):
    """An account with the same email is already registered."""
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "GenerationUnavailable",
    "RotationWriteFailed",
    "BulkSweepPartialFailure",
    "AccountExistsError",
]
