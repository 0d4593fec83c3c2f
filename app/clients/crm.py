from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.core.logging import logger
from app.schemas.dashboard import CampaignRecord, CustomerStats, SubscriptionStats, UserRecord
from app.schemas.notification import (
    BatchResult,
    BulkDeleteResult,
    NotificationCreate,
    NotificationRecord,
    NotificationStats,
    NotificationUpdate,
)
from app.utils.retry import CircuitBreaker, CircuitBreakerOpenException


class CRMClientError(Exception):
    """Base class for failures talking to the CRM API."""


class CRMUnavailableError(CRMClientError):
    """Transport-level failure: the CRM API could not be reached."""


class CRMResponseError(CRMClientError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CRMNotFoundError(CRMResponseError):
    pass


crm_circuit_breaker = CircuitBreaker(
    failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
    reset_timeout=settings.CIRCUIT_RESET_TIMEOUT,
    service="CRM",
)


class CRMClient:
    """Thin async client for the CRM REST API.

    Every CRM response is wrapped as ``{"success": bool, "data": ..., "message": str}``.
    The client unwraps ``data`` and turns everything else into a
    :class:`CRMClientError` subclass. Reads are never retried; a failing upstream
    trips the shared circuit breaker so later calls fail fast.
    """

    def __init__(self, token: Optional[str] = None, base_url: str = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 circuit_breaker: CircuitBreaker = crm_circuit_breaker):
        self.token = token
        self.base_url = (base_url or settings.CRM_API_URL).rstrip("/")
        self.circuit_breaker = circuit_breaker
        self._http = http_client
        self._owns_http = http_client is None

    async def __aenter__(self):
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=settings.CRM_API_TIMEOUT)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=settings.CRM_API_TIMEOUT)
        self.circuit_breaker.before_call()
        try:
            payload = await self._send(method, path, **kwargs)
        except CircuitBreakerOpenException:
            raise
        except CRMClientError as e:
            if is_upstream_fault(e):
                self.circuit_breaker.record_failure(e)
            else:
                self.circuit_breaker.record_success()
            raise
        self.circuit_breaker.record_success()
        return payload

    async def _send(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.request(method, url, headers=self._headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            message = _error_message(e.response) or f"CRM API returned {status_code}"
            logger.warning("CRM API request failed", method=method, path=path, status_code=status_code, error=message)
            if status_code == 404:
                raise CRMNotFoundError(message, status_code) from e
            raise CRMResponseError(message, status_code) from e
        except httpx.RequestError as e:
            logger.error("CRM API unavailable", method=method, path=path, error=str(e))
            raise CRMUnavailableError(f"CRM API unavailable: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise CRMResponseError("CRM API returned a non-JSON body", response.status_code) from e

        if isinstance(body, dict) and "success" in body:
            if not body["success"]:
                message = body.get("message") or "CRM API reported failure"
                logger.warning("CRM API reported failure", method=method, path=path, error=message)
                raise CRMResponseError(message, response.status_code)
            return body.get("data")
        return body

    # Read side

    async def get_customer_stats(self) -> Optional[CustomerStats]:
        data = await self._request("GET", "/customers/stats")
        return CustomerStats.model_validate(data) if data else None

    async def get_all_notifications(self) -> List[NotificationRecord]:
        data = await self._request("GET", "/notifications")
        return [NotificationRecord.model_validate(item) for item in data or []]

    async def get_pending_notifications(self) -> List[NotificationRecord]:
        data = await self._request("GET", "/notifications/pending")
        return [NotificationRecord.model_validate(item) for item in data or []]

    async def get_notifications_by_customer(self, customer_id: str) -> List[NotificationRecord]:
        data = await self._request("GET", f"/notifications/customer/{customer_id}")
        return [NotificationRecord.model_validate(item) for item in data or []]

    async def get_notification(self, notification_id: str) -> NotificationRecord:
        data = await self._request("GET", f"/notifications/{notification_id}")
        if not data:
            raise CRMNotFoundError("Notification not found", 404)
        return NotificationRecord.model_validate(data)

    async def get_notification_stats(self) -> Optional[NotificationStats]:
        data = await self._request("GET", "/notifications/stats")
        return NotificationStats.model_validate(data) if data else None

    async def get_subscription_stats(self) -> Optional[SubscriptionStats]:
        data = await self._request("GET", "/subscriptions/stats")
        return SubscriptionStats.model_validate(data) if data else None

    async def get_all_email_campaigns(self) -> List[CampaignRecord]:
        data = await self._request("GET", "/email-campaigns")
        if isinstance(data, dict):
            data = data.get("campaigns")
        return [CampaignRecord.model_validate(item) for item in data or []]

    async def get_all_users(self) -> List[UserRecord]:
        data = await self._request("GET", "/auth/users")
        if isinstance(data, dict):
            data = data.get("users")
        return [UserRecord.model_validate(item) for item in data or []]

    async def get_profile(self) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", "/auth/profile")
        if isinstance(data, dict) and "user" in data:
            return data["user"]
        return data

    # Write side

    async def create_notification(self, notification: NotificationCreate) -> NotificationRecord:
        data = await self._request("POST", "/notifications", json=_dump(notification))
        return NotificationRecord.model_validate(data)

    async def update_notification(self, notification_id: str, changes: NotificationUpdate) -> NotificationRecord:
        data = await self._request("PUT", f"/notifications/{notification_id}", json=_dump(changes))
        return NotificationRecord.model_validate(data)

    async def delete_notification(self, notification_id: str) -> None:
        await self._request("DELETE", f"/notifications/{notification_id}")

    async def bulk_delete_notifications(self, notification_ids: List[str]) -> BulkDeleteResult:
        data = await self._request("DELETE", "/notifications/bulk", json={"notificationIds": list(notification_ids)})
        if isinstance(data, dict):
            return BulkDeleteResult.model_validate(data)
        return BulkDeleteResult(deleted_count=len(notification_ids))

    async def send_notification(self, notification_id: str) -> NotificationRecord:
        data = await self._request("POST", f"/notifications/{notification_id}/send", json={})
        return NotificationRecord.model_validate(data)

    async def create_subscription_expiry_notifications(self, days_before: int = 3) -> BatchResult:
        data = await self._request("POST", "/notifications/subscription-expiry", json={"daysBefore": days_before})
        return _batch_result(data)

    async def create_payment_reminder_notifications(self, days_before: int = 3) -> BatchResult:
        data = await self._request("POST", "/notifications/payment-reminders", json={"daysBefore": days_before})
        return _batch_result(data)

    async def create_welcome_notification(self, customer_id: str, message: Optional[str] = None) -> NotificationRecord:
        payload = {"message": message} if message else {}
        data = await self._request("POST", f"/notifications/customer/{customer_id}/welcome", json=payload)
        return NotificationRecord.model_validate(data)


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _batch_result(data: Any) -> BatchResult:
    if isinstance(data, dict):
        return BatchResult.model_validate(data)
    if isinstance(data, list):
        return BatchResult(created=len(data))
    return BatchResult()


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("message") or body.get("error")
    return None


def is_upstream_fault(error: Exception) -> bool:
    """True when the error says the CRM API itself is unhealthy, not the request."""
    if isinstance(error, CRMUnavailableError):
        return True
    if isinstance(error, CRMResponseError):
        return error.status_code is None or error.status_code >= 500
    return False
