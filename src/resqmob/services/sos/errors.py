"""
SOS engine error taxonomy

State-machine errors (conflict, not found, permission, invalid transition)
are raised synchronously to the caller and must not be retried.
DispatchError describes notification failures and is only ever logged.
"""

from typing import List, Optional


class SOSError(Exception):
    """Base class for SOS engine errors"""
    pass


class ConflictError(SOSError):
    """Owner already has an active alert"""

    def __init__(self, owner_id: str, active_alert_id: Optional[str] = None):
        self.owner_id = owner_id
        self.active_alert_id = active_alert_id
        message = f"User {owner_id} already has an active alert"
        if active_alert_id:
            message += f" ({active_alert_id})"
        super().__init__(message)


class NotFoundError(SOSError):
    """Unknown alert or responder"""
    pass


class PermissionDeniedError(SOSError):
    """Caller is not allowed to perform the operation"""
    pass


class InvalidTransitionError(SOSError):
    """Illegal state change"""
    pass


class LocationUnavailableError(SOSError):
    """Current position could not be resolved"""
    pass


class DispatchError(SOSError):
    """Partial or total notification failure"""

    def __init__(self, alert_id: str, failed_recipients: List[str], total: int):
        self.alert_id = alert_id
        self.failed_recipients = list(failed_recipients)
        self.total = total
        super().__init__(
            f"{len(self.failed_recipients)}/{total} notifications failed for alert {alert_id}"
        )

    @property
    def is_total_failure(self) -> bool:
        return self.total > 0 and len(self.failed_recipients) == self.total
