import logging

import pytest
from fastapi import HTTPException
from starlette.requests import Request
from starlette.responses import Response

from app.clients.crm import CRMNotFoundError, CRMResponseError, CRMUnavailableError
from app.routers.errors import upstream_http_error
from app.routers.notifications import rate_limit_callback
from app.utils.retry import CircuitBreakerOpenException
from conftest import make_notification


@pytest.mark.asyncio
async def test_create_notification(client, fake_crm):
    response = await client.post("/api/v1/notifications", json={
        "customer": "c1", "type": "custom", "title": "Rent due", "message": "Please pay", "channel": "sms",
    })

    assert response.status_code == 201
    body = response.json()
    assert body["_id"] == "created"
    assert body["status"] == "pending"
    assert body["channel"] == "sms"
    assert fake_crm.received["create_notification"].title == "Rent due"


@pytest.mark.asyncio
async def test_create_notification_requires_title(client):
    response = await client.post("/api/v1/notifications", json={
        "customer": "c1", "type": "custom", "title": "", "message": "Please pay",
    })

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_update_notification(client, fake_crm):
    fake_crm.notifications = [make_notification("n1", status="pending")]

    response = await client.put("/api/v1/notifications/n1", json={"title": "Updated", "status": "failed"})

    assert response.status_code == 200
    assert response.json()["title"] == "Updated"
    assert response.json()["status"] == "failed"


@pytest.mark.asyncio
async def test_update_unknown_notification(client):
    response = await client.put("/api/v1/notifications/missing", json={"title": "Updated"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_notification(client, fake_crm):
    fake_crm.notifications = [make_notification("n1")]

    response = await client.delete("/api/v1/notifications/n1")

    assert response.status_code == 204
    assert response.content == b""
    assert fake_crm.notifications == []


@pytest.mark.asyncio
async def test_bulk_delete(client, fake_crm):
    response = await client.request("DELETE", "/api/v1/notifications/bulk", json={"notificationIds": ["n1", "n2"]})

    assert response.status_code == 200
    assert response.json()["deletedCount"] == 2
    assert fake_crm.received["bulk_delete_notifications"] == ["n1", "n2"]


@pytest.mark.asyncio
async def test_bulk_delete_rejects_empty_list(client):
    response = await client.request("DELETE", "/api/v1/notifications/bulk", json={"notificationIds": []})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_bulk_delete_requires_delete_permission(client, current_user):
    current_user["role"] = "staff"
    current_user["permissions"] = ["notification_read", "notification_write"]

    response = await client.request("DELETE", "/api/v1/notifications/bulk", json={"notificationIds": ["n1"]})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_subscription_expiry_batch_passes_days_before(client, fake_crm):
    response = await client.post("/api/v1/notifications/subscription-expiry", json={"daysBefore": 7})

    assert response.status_code == 200
    assert response.json()["created"] == 2
    assert fake_crm.received["create_subscription_expiry_notifications"] == 7


@pytest.mark.asyncio
async def test_payment_reminders_default_days(client, fake_crm):
    response = await client.post("/api/v1/notifications/payment-reminders")

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Created 1 notifications", "created": 1}
    assert fake_crm.received["create_payment_reminder_notifications"] == 3


@pytest.mark.asyncio
async def test_payment_reminders_reject_negative_days(client):
    response = await client.post("/api/v1/notifications/payment-reminders", json={"daysBefore": -1})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_welcome_notification(client, fake_crm):
    response = await client.post("/api/v1/notifications/customer/c9/welcome", json={"message": "Hello"})

    assert response.status_code == 201
    assert response.json()["_id"] == "welcome-c9"
    assert fake_crm.received["create_welcome_notification"] == ("c9", "Hello")


@pytest.mark.asyncio
async def test_welcome_notification_without_body(client, fake_crm):
    response = await client.post("/api/v1/notifications/customer/c9/welcome")

    assert response.status_code == 201
    assert fake_crm.received["create_welcome_notification"] == ("c9", None)


@pytest.mark.asyncio
async def test_notification_stats(client):
    response = await client.get("/api/v1/notifications/stats")

    assert response.status_code == 200
    assert response.json() == {"total": 6, "pending": 2, "sent": 3, "delivered": 0, "failed": 1}


@pytest.mark.asyncio
async def test_pending_notifications_are_decorated(client, fake_crm):
    fake_crm.notifications = [
        make_notification("n1", status="pending"),
        make_notification("n2", status="sent"),
        make_notification("n3", status="pending", channel="push"),
    ]

    response = await client.get("/api/v1/notifications/pending")

    assert response.status_code == 200
    body = response.json()
    assert [item["_id"] for item in body] == ["n1", "n3"]
    assert body[1]["channelIcon"] == "bell"
    assert body[0]["statusColor"] == "yellow"


@pytest.mark.asyncio
async def test_customer_notifications(client, fake_crm):
    fake_crm.notifications = [
        make_notification("n1"),
        make_notification("n2", customer={"_id": "c2", "name": "Sara Ali", "email": "sara@crm.io"}),
        make_notification("n3", customer="c2"),
    ]

    response = await client.get("/api/v1/notifications/customer/c2")

    assert response.status_code == 200
    assert [item["_id"] for item in response.json()] == ["n2", "n3"]
    assert response.json()[0]["customerName"] == "Sara Ali"
    assert fake_crm.received["get_notifications_by_customer"] == "c2"


@pytest.mark.parametrize("error, expected", [
    (CRMNotFoundError("Notification not found", 404), 404),
    (CRMResponseError("Invalid customer", 400), 400),
    (CRMResponseError("Already sent", 409), 409),
    (CRMResponseError("Validation failed", 422), 422),
    (CRMResponseError("Internal error", 500), 502),
    (CRMResponseError("CRM API reported failure"), 502),
    (CRMUnavailableError("connection refused"), 503),
    (CircuitBreakerOpenException("Circuit breaker for CRM is open"), 503),
    (RuntimeError("unexpected"), 500),
])
def test_upstream_error_mapping(error, expected):
    assert upstream_http_error(error).status_code == expected


@pytest.mark.asyncio
async def test_client_error_is_passed_through(client, fake_crm):
    fake_crm.failures["create_notification"] = CRMResponseError("Invalid customer", 400)

    response = await client.post("/api/v1/notifications", json={
        "customer": "c1", "type": "custom", "title": "Rent due", "message": "Please pay",
    })

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid customer"


@pytest.mark.asyncio
async def test_crm_outage_is_service_unavailable(client, fake_crm):
    fake_crm.failures["get_notification_stats"] = CRMUnavailableError("CRM API unavailable")

    response = await client.get("/api/v1/notifications/stats")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_rate_limit_callback(caplog):
    request = Request({
        "type": "http",
        "method": "POST",
        "path": "/api/v1/notifications/n1/send",
        "query_string": b"",
        "headers": [],
        "client": ("10.0.0.7", 50123),
    })

    with caplog.at_level(logging.WARNING):
        with pytest.raises(HTTPException) as exc_info:
            await rate_limit_callback(request, Response(), pexpire=2500)

    assert exc_info.value.status_code == 429
    assert exc_info.value.headers == {"Retry-After": "2"}
    assert "rate_limit_exceeded" in caplog.text
    assert "10.0.0.7" in caplog.text
