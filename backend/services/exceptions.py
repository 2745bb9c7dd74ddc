"""
Domain errors raised by the quality services and mapped to HTTP responses by the API layer
"""
from typing import Any, Dict, Optional


class QualityError(Exception):
    """Base class for business-rule errors"""


class EntityNotFoundError(QualityError):
    def __init__(self, kind: str, entity_id: Any):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class AuditStateError(QualityError):
    """Transition not allowed from the audit's current status"""


class VerificationError(QualityError):
    """Verification step rejected by a business rule"""


class ResponseTypeError(QualityError, ValueError):
    """Item response tag does not match the checklist item type"""


class SubmissionValidationError(QualityError):
    """
    User-correctable reason an audit cannot be submitted yet.

    `item_id` points at the first offending checklist item so the client
    can scroll to it. Nothing is persisted when this is raised.
    """

    INCOMPLETE = "incomplete"
    MISSING_EVIDENCE = "missing_evidence"
    CRITICAL_UNANSWERED = "critical_unanswered"

    def __init__(
        self,
        reason: str,
        message: str,
        item_id: Optional[str] = None,
        count: Optional[int] = None,
        percentage: Optional[int] = None,
        required: Optional[float] = None,
    ):
        self.reason = reason
        self.message = message
        self.item_id = item_id
        self.count = count
        self.percentage = percentage
        self.required = required
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "message": self.message,
            "item_id": self.item_id,
            "count": self.count,
            "percentage": self.percentage,
            "required": self.required,
        }


class EvidenceRejectedError(QualityError, ValueError):
    """Evidence file refused by the store (too large, unreadable); the file is dropped, the draft is not"""
