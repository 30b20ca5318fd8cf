"""Error taxonomy shared by services and routers.

Every failure a caller can observe maps to exactly one of these classes so
clients can tell "retry later" from "fix your input" from "state corrupted".
``create_app()`` registers a single handler that renders any
:class:`ControlPlaneError` as ``{"detail": ..., "code": ...}``.
"""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base class for all control-plane errors.

    Parameters
    ----------
    message:
        Human-readable message returned to the client.  Never include
        secrets, connection strings, or key material.
    status_code:
        HTTP status used when the error reaches the API boundary.
    """

    code: str = "control_plane_error"
    default_status: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.default_status


class ValidationError(ControlPlaneError):
    """Bad input the caller can correct."""

    code = "validation_error"
    default_status = 400


class Unauthorized(ControlPlaneError):
    """Missing, expired, or invalid identity."""

    code = "unauthorized"
    default_status = 401


class Forbidden(ControlPlaneError):
    """Identity is known but lacks the role or tenant scope required."""

    code = "forbidden"
    default_status = 403


class NotFound(ControlPlaneError):
    """Missing tenant, subscription, or membership."""

    code = "not_found"
    default_status = 404


class NotProvisioned(ControlPlaneError):
    """Tenant exists and is active but has no connection secret yet."""

    code = "not_provisioned"
    default_status = 409


class Conflict(ControlPlaneError):
    """Operation is illegal for the current state."""

    code = "conflict"
    default_status = 409


class DecryptionError(ControlPlaneError):
    """A sealed value failed its integrity check.

    Fatal for the ciphertext involved: retrying against the same sealed
    value can never succeed.  The message is fixed so no input leaks.
    """

    code = "decryption_failed"
    default_status = 500

    def __init__(self, message: str = "Sealed value failed integrity verification") -> None:
        super().__init__(message)


class ServiceUnavailable(ControlPlaneError):
    """A collaborator is unreachable or not configured."""

    code = "service_unavailable"
    default_status = 503


class ProvisioningFailed(ControlPlaneError):
    """The infrastructure collaborator failed; retrying provisioning is safe."""

    code = "provisioning_failed"
    default_status = 502
