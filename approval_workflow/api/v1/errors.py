"""Mapping of workflow error codes to HTTP responses."""

from fastapi import status
from fastapi.responses import JSONResponse

from approval_workflow.models.schemas import ApiResponse, WorkflowErrorCode, WorkflowResult

HTTP_STATUS_BY_ERROR = {
    # Not found
    WorkflowErrorCode.ENTITY_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    WorkflowErrorCode.WORKFLOW_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    WorkflowErrorCode.STAGE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    # Permission
    WorkflowErrorCode.ROLE_NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
    WorkflowErrorCode.APPROVE_NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
    WorkflowErrorCode.REJECT_NOT_ALLOWED: status.HTTP_403_FORBIDDEN,
    # Validation
    WorkflowErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    # Business-state conflicts
    WorkflowErrorCode.ALREADY_APPROVED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    WorkflowErrorCode.ALREADY_REJECTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    WorkflowErrorCode.INVALID_STATE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    WorkflowErrorCode.STAGE_MISMATCH: status.HTTP_422_UNPROCESSABLE_ENTITY,
    WorkflowErrorCode.NO_CURRENT_STAGE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    WorkflowErrorCode.WORKFLOW_INACTIVE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    WorkflowErrorCode.CONCURRENT_MODIFICATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    # Internal
    WorkflowErrorCode.WORKFLOW_INVALID: status.HTTP_500_INTERNAL_SERVER_ERROR,
    WorkflowErrorCode.ENTITY_UPDATE_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    WorkflowErrorCode.AUDIT_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    WorkflowErrorCode.UNKNOWN_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(error_code: WorkflowErrorCode) -> int:
    return HTTP_STATUS_BY_ERROR.get(error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_response(status_code: int, error_code: str, error_message: str) -> JSONResponse:
    body = ApiResponse(success=False, error_code=error_code, error_message=error_message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def failure_response(result: WorkflowResult) -> JSONResponse:
    """Failed engine result as an HTTP error carrying only code and message"""
    code = result.error_code or WorkflowErrorCode.UNKNOWN_ERROR
    return error_response(status_for(code), code.value, result.error_message or "Request failed")
