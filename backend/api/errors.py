"""
Map domain errors to HTTP errors
"""
from fastapi import HTTPException

from backend.services.exceptions import (
    AuditStateError,
    EntityNotFoundError,
    EvidenceRejectedError,
    QualityError,
    ResponseTypeError,
    SubmissionValidationError,
    VerificationError,
)


def http_error(exc: QualityError) -> HTTPException:
    if isinstance(exc, EvidenceRejectedError):
        return HTTPException(status_code=413, detail=str(exc))
    if isinstance(exc, SubmissionValidationError):
        return HTTPException(status_code=422, detail=exc.to_dict())
    if isinstance(exc, ResponseTypeError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (AuditStateError, VerificationError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
