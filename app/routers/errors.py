from fastapi import HTTPException, status

from app.clients.crm import CRMClientError, CRMNotFoundError, CRMResponseError
from app.utils.retry import CircuitBreakerOpenException


def upstream_http_error(error: Exception, not_found_detail: str = "Not found") -> HTTPException:
    """Translate a CRM client failure into the HTTP error returned to the dashboard."""
    if isinstance(error, CRMNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=not_found_detail)
    if isinstance(error, CRMResponseError):
        if error.status_code in (400, 409, 422):
            return HTTPException(status_code=error.status_code, detail=str(error))
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, (CRMClientError, CircuitBreakerOpenException)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
