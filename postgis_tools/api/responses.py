# postgis_tools/api/responses.py
from typing import Any, Dict

from fastapi import HTTPException, status

from postgis_tools.models.schema_models import OperationResult, Outcome

OUTCOME_STATUS_CODES = {
    Outcome.VALIDATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    Outcome.CONFLICT: status.HTTP_409_CONFLICT,
    Outcome.NOT_CONNECTED: status.HTTP_503_SERVICE_UNAVAILABLE,
    Outcome.BUSY: status.HTTP_423_LOCKED,
    Outcome.SERVER_ERROR: status.HTTP_502_BAD_GATEWAY,
    Outcome.METADATA_UNAVAILABLE: status.HTTP_502_BAD_GATEWAY,
}


def result_payload(result: OperationResult, **extra: Any) -> Dict[str, Any]:
    """Turn an operation result into a response body, or raise for failed outcomes"""
    status_code = OUTCOME_STATUS_CODES.get(result.outcome)
    if status_code is not None:
        raise HTTPException(
            status_code=status_code,
            detail=result.model_dump(mode="json"),
        )

    payload = result.model_dump(mode="json")
    payload.update(extra)
    return payload
