"""
Error taxonomy for billing and client-portal operations.

Every error is an HTTPException so it can be raised from helpers deep in a
request and still reach the caller as a short, actionable message:

- ValidationFailed          400  bad input shape or range
- Unauthorized              401  no verified identity
- Forbidden                 403  identity lacks access, or portal disabled
- NotFound / ShareLinkInvalid 404  referenced entity absent or expired
- UpstreamFailure           500  datastore / payment mirror failed
- ChargeMaterializationError 500  usage import failed half-way (see materializer)
"""
from typing import List, Optional

from fastapi import HTTPException


class BillingError(HTTPException):
    """Base class. Subclasses fix the status code and default message."""
    status = 500
    message = "Unable to complete request."

    def __init__(self, message: Optional[str] = None, detail=None):
        self.message = message or self.message
        super().__init__(status_code=self.status, detail=detail if detail is not None else self.message)

    def __str__(self) -> str:
        return self.message


class ValidationFailed(BillingError):
    status = 400
    message = "Invalid request."


class UsageRejected(ValidationFailed):
    """A usage batch with no billable rows. Carries the row warnings."""
    message = "No valid rows to import."

    def __init__(self, message: Optional[str] = None, warnings: Optional[List[str]] = None):
        self.warnings = list(warnings or [])
        msg = message or self.message
        super().__init__(msg, detail={"error": msg, "details": self.warnings})


class Unauthorized(BillingError):
    status = 401
    message = "Unauthorized"


class Forbidden(BillingError):
    status = 403
    message = "You do not have access to this client portal."


class PortalDisabled(Forbidden):
    message = "Client portal access is disabled for this client."


class NotFound(BillingError):
    status = 404
    message = "Not found."


class ShareLinkInvalid(NotFound):
    message = "The provided share link is invalid or expired."


class UpstreamFailure(BillingError):
    status = 500
    message = "Unable to complete request."


class ChargeMaterializationError(UpstreamFailure):
    """
    The usage event was written but its pending charge was not.

    `compensated` tells whether the usage event was deleted again. When it is
    False an orphaned usage event may remain and needs attention.
    """
    message = "Failed to import usage rows."

    def __init__(self, usage_event_id: str, compensated: bool, message: Optional[str] = None):
        self.usage_event_id = usage_event_id
        self.compensated = compensated
        super().__init__(message)
