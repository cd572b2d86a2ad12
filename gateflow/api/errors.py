"""
Translation of service errors to HTTP responses.
"""

from fastapi import HTTPException, status

from gateflow.errors import ErrorCode, GateflowError

HTTP_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.REFUND_IN_PROGRESS: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.UNDETERMINED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.PROVIDER_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.PERSISTENCE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def to_http_exception(error: GateflowError) -> HTTPException:
    """Map a GateflowError to an HTTPException carrying its to_dict() body."""
    status_code = HTTP_STATUS_BY_CODE.get(
        error.code, status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return HTTPException(status_code=status_code, detail=error.to_dict()["error"])
