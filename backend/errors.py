# errors.py - Domain error taxonomy for fleet-deploy
# Each error carries a stable code and the HTTP status it maps to.
# main.py renders them as {"detail", "code", "request_id"}.

from typing import Any, Dict, Optional


class FleetDeployError(Exception):
    status_code = 500
    code = "FLEET_DEPLOY_ERROR"
    retryable = False

    def __init__(self, detail: str = "", **context: Any):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.context: Dict[str, Any] = context

    def to_dict(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.detail, "code": self.code}
        if self.retryable:
            body["retryable"] = True
        if self.context:
            body.update(self.context)
        body["request_id"] = request_id
        return body


class Unauthorized(FleetDeployError):
    status_code = 401
    code = "UNAUTHORIZED"


class NotFound(FleetDeployError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidVersion(FleetDeployError):
    status_code = 400
    code = "INVALID_VERSION"


class InactiveVersion(NotFound):
    """Registered but retired: not eligible as a new target."""
    status_code = 400
    code = "INACTIVE_VERSION"


class IntegrityMismatch(FleetDeployError):
    status_code = 400
    code = "INTEGRITY_MISMATCH"


class DuplicateVersion(FleetDeployError):
    status_code = 409
    code = "DUPLICATE_VERSION"


class UpdateInProgress(FleetDeployError):
    status_code = 409
    code = "UPDATE_IN_PROGRESS"


class NoActiveUpdate(FleetDeployError):
    """Stray or duplicate result report. Benign: logged, never applied."""
    status_code = 409
    code = "NO_ACTIVE_UPDATE"


class ConflictingReport(FleetDeployError):
    """Report whose outcome contradicts an already-terminal ledger entry."""
    status_code = 409
    code = "CONFLICTING_REPORT"


class ClientHasHistory(FleetDeployError):
    status_code = 409
    code = "CLIENT_HAS_HISTORY"


class StorageUnavailable(FleetDeployError):
    status_code = 503
    code = "STORAGE_UNAVAILABLE"
    retryable = True
