"""Error taxonomy for the sync subsystem.

Primary-path errors (bad signature, malformed event, failed primary write)
carry an HTTP status code and surface to the webhook caller. Downstream
errors (view regeneration, cache invalidation, push log) are logged by the
dispatcher and never turn a successful data write into a failed response.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base error for the sync subsystem."""

    status_code: int = 500
    code: str = "SYNC_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SyncError):
    """Malformed or missing event fields. Rejected with no side effects."""

    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidIdentifierError(ValidationError):
    """A table or column name failed allow-list or pattern validation."""

    code = "INVALID_IDENTIFIER"


class AuthError(SyncError):
    """Webhook signature mismatch or missing admin credentials."""

    status_code = 401
    code = "AUTH_ERROR"


class UpsertFailure(SyncError):
    """Primary write to the target store failed."""

    code = "UPSERT_FAILURE"

    def __init__(self, table: str, message: str) -> None:
        super().__init__(f"{table}: {message}")
        self.table = table


class RegistrationFailure(SyncError):
    """Tenant schema/role provisioning failed."""

    code = "REGISTRATION_FAILURE"


class ViewRegenerationError(SyncError):
    """Creating or replacing a tenant view failed."""

    code = "VIEW_REGENERATION_FAILURE"


class TenantNotFoundError(SyncError):
    """No short name has been registered for the tenant."""

    status_code = 404
    code = "TENANT_NOT_FOUND"


class DownstreamTaskFailure(SyncError):
    """A background maintenance task failed after its retry budget."""

    code = "DOWNSTREAM_TASK_FAILURE"

    def __init__(self, task: str, message: str) -> None:
        super().__init__(f"{task}: {message}")
        self.task = task
