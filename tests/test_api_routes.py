"""
Tests for the dashboard APIs.

Coverage:
- Bearer authentication and organization membership (tenant isolation)
- Workflow create/cancel/metrics/get and the cron entry point
- SMS analytics envelopes, template CRUD, manual sends
- Emergency detection, alert listing and first-wins resolution
- Message log paging and filters
- Error response shapes
"""
from datetime import timedelta

import pytest

from serviceai.models import (
    EmergencyNotification,
    EmergencyStatus,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    utcnow,
)

from tests.conftest import ORG_A, ORG_B, TOKEN_B

APPOINTMENT_VARS = {
    "service_type": "AC repair",
    "date": "10/21/2026",
    "time": "9:00 AM",
    "address": "12 Main St",
}


def create_body(organization_id=ORG_A, customer_id="cust-es", when=None, **extra):
    return {
        "organizationId": organization_id,
        "customerId": customer_id,
        "workflowType": "appointment_confirmation",
        "scheduledAt": (when or utcnow()).isoformat(),
        "metadata": {"variables": APPOINTMENT_VARS},
        **extra,
    }


# =============================================================================
# Authentication / tenant isolation
# =============================================================================

@pytest.mark.asyncio
async def test_missing_token_is_401(client):
    response = await client.get("/sms/statistics", params={"organizationId": ORG_A})
    assert response.status_code == 401
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_invalid_token_is_401(client):
    response = await client.get(
        "/sms/statistics",
        params={"organizationId": ORG_A},
        headers={"Authorization": "Bearer nope"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_other_tenant_statistics_are_forbidden(authed_client):
    response = await authed_client.get("/sms/statistics", params={"organizationId": ORG_B})
    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "Organization access denied"}


@pytest.mark.asyncio
async def test_other_tenant_cannot_read_or_cancel_workflow(authed_client, client):
    created = await authed_client.post("/workflows/create", json=create_body(when=utcnow() + timedelta(hours=3)))
    workflow_id = created.json()["data"]["id"]
    foreign = {"Authorization": f"Bearer {TOKEN_B}"}

    read = await client.get(f"/workflows/{workflow_id}", headers=foreign)
    cancel = await client.post("/workflows/cancel", json={"workflowId": workflow_id}, headers=foreign)

    assert read.status_code == 403
    assert cancel.status_code == 403
    still = await authed_client.get(f"/workflows/{workflow_id}")
    assert still.json()["data"]["status"] == "scheduled"


@pytest.mark.asyncio
async def test_other_tenant_cannot_create_workflow_for_foreign_customer(authed_client):
    response = await authed_client.post("/workflows/create", json=create_body(customer_id="cust-b"))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_templates_are_tenant_scoped(authed_client, client):
    await authed_client.post("/sms/templates", json={
        "organizationId": ORG_A,
        "key": "promo",
        "language": "en",
        "content": "Tune-up special from {{business_name}}",
        "category": "direct",
    })
    foreign = {"Authorization": f"Bearer {TOKEN_B}"}

    own = await client.get("/sms/templates", params={"organizationId": ORG_B}, headers=foreign)
    assert "promo" not in [t["key"] for t in own.json()["data"]]

    forbidden = await client.put("/sms/templates", json={
        "organizationId": ORG_A, "key": "promo", "language": "en", "content": "hijacked",
    }, headers=foreign)
    assert forbidden.status_code == 403


# =============================================================================
# Workflows
# =============================================================================

@pytest.mark.asyncio
async def test_create_runs_due_workflow(authed_client, senders):
    response = await authed_client.post("/workflows/create", json=create_body())
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert len(senders.all_sent) == 1


@pytest.mark.asyncio
async def test_create_rejects_unknown_workflow_type(authed_client):
    response = await authed_client.post("/workflows/create", json=create_body(workflowType="carrier_pigeon"))
    assert response.status_code == 400
    assert response.json()["error"] == "Validation error"


@pytest.mark.asyncio
async def test_cancel_completed_is_conflict(authed_client):
    created = await authed_client.post("/workflows/create", json=create_body())
    response = await authed_client.post("/workflows/cancel", json={"workflowId": created.json()["data"]["id"]})
    assert response.status_code == 409
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_cancel_scheduled(authed_client):
    created = await authed_client.post("/workflows/create", json=create_body(when=utcnow() + timedelta(hours=3)))
    response = await authed_client.post("/workflows/cancel", json={"workflowId": created.json()["data"]["id"]})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"


@pytest.mark.asyncio
async def test_workflow_metrics_envelope(authed_client):
    await authed_client.post("/workflows/create", json=create_body())
    response = await authed_client.get("/workflows/metrics", params={"organizationId": ORG_A, "timeRange": "24h"})
    body = response.json()
    assert body["success"] is True
    assert body["timeRange"] == "24h"
    assert body["organizationId"] == ORG_A
    assert body["data"]["completed"] == 1


@pytest.mark.asyncio
async def test_execute_due_requires_cron_secret(client):
    assert (await client.post("/workflows/execute-due")).status_code == 401
    response = await client.post("/workflows/execute-due", headers={"X-Cron-Secret": "cron-secret"})
    assert response.status_code == 200
    assert response.json()["data"]["processed"] == 0


@pytest.mark.asyncio
async def test_unknown_workflow_is_404(authed_client):
    response = await authed_client.get("/workflows/does-not-exist")
    assert response.status_code == 404


# =============================================================================
# SMS analytics / templates / sends
# =============================================================================

@pytest.mark.asyncio
async def test_trends_for_empty_org_are_well_formed(authed_client):
    response = await authed_client.get("/sms/trends", params={"organizationId": ORG_A, "timeRange": "24h"})
    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["timeRange"] == "24h"
    assert len(body["data"]) == 24
    assert all(b["sent"] == 0 for b in body["data"])


@pytest.mark.asyncio
async def test_invalid_time_range_is_400(authed_client):
    response = await authed_client.get("/sms/statistics", params={"organizationId": ORG_A, "timeRange": "1y"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_template_and_language_performance(authed_client):
    await authed_client.post("/sms/send", json={
        "organizationId": ORG_A,
        "templateKey": "welcome_message",
        "recipients": [{"phone": "+15035551001", "language": "es"}, {"phone": "+15035552001"}],
        "variables": {"business_name": "Cool Air HVAC", "business_phone": "+15035550100"},
    })

    template = await authed_client.get("/sms/template-performance", params={
        "organizationId": ORG_A, "templateKey": "welcome_message",
    })
    assert template.json()["data"]["totalSent"] == 2

    language = await authed_client.get("/sms/language-performance", params={"organizationId": ORG_A})
    data = language.json()["data"]
    assert data["english"]["totalSent"] == 1
    assert data["spanish"]["totalSent"] == 1


@pytest.mark.asyncio
async def test_template_crud_and_preview(authed_client, persistence):
    created = await authed_client.post("/sms/templates", json={
        "organizationId": ORG_A,
        "key": "promo",
        "language": "es",
        "content": "Oferta de {{business_name}} para {{customer_name}}",
        "category": "direct",
    })
    assert created.json()["data"]["variables"] == ["business_name", "customer_name"]

    updated = await authed_client.put("/sms/templates", json={
        "organizationId": ORG_A, "key": "promo", "language": "es", "is_active": False,
    })
    assert updated.json()["data"]["version"] == 2
    assert updated.json()["data"]["is_active"] is False

    preview = await authed_client.post("/sms/templates/test", json={
        "organizationId": ORG_A,
        "key": "welcome_message",
        "language": "es",
        "variables": {"business_name": "Cool Air HVAC", "business_phone": "+15035550100"},
    })
    assert preview.json()["success"] is True
    assert preview.json()["formattedMessage"].startswith("¡Bienvenido")
    assert persistence.messages == {}


@pytest.mark.asyncio
async def test_create_template_requires_content(authed_client):
    response = await authed_client.post("/sms/templates", json={
        "organizationId": ORG_A, "key": "promo", "language": "en", "content": "", "category": "direct",
    })
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_direct_send(authed_client, senders):
    response = await authed_client.post("/sms/send", json={
        "organizationId": ORG_A, "to": "(503) 555-2001", "message": "Your technician is on the way",
    })
    assert response.json()["success"] is True
    assert senders.twilio.sent[0].to == "+15035552001"


@pytest.mark.asyncio
async def test_send_needs_message_or_template(authed_client):
    response = await authed_client.post("/sms/send", json={"organizationId": ORG_A, "to": "+15035552001"})
    assert response.status_code == 400


# =============================================================================
# Emergencies
# =============================================================================

@pytest.mark.asyncio
async def test_resolve_emergency(authed_client, persistence):
    notification = await persistence.insert_emergency_notification(EmergencyNotification(
        organization_id=ORG_A, tool_call_id="tc-1", transfer_to="+15035550300", status=EmergencyStatus.SENT,
    ))

    response = await authed_client.post(
        f"/emergency/alerts/{notification.id}/resolve",
        params={"organizationId": ORG_A},
        json={"notes": "Gas shut off"},
    )

    data = response.json()["data"]
    assert data["status"] == "resolved"
    assert data["resolved_by"] == "user-a"
    assert data["metadata"]["resolution_notes"] == "Gas shut off"


@pytest.mark.asyncio
async def test_resolve_other_tenants_emergency_is_forbidden(client, persistence):
    notification = await persistence.insert_emergency_notification(EmergencyNotification(
        organization_id=ORG_A, tool_call_id="tc-1", transfer_to="+15035550300",
    ))
    foreign = {"Authorization": f"Bearer {TOKEN_B}"}

    as_own_org = await client.post(
        f"/emergency/alerts/{notification.id}/resolve", params={"organizationId": ORG_B}, headers=foreign,
    )
    as_foreign_org = await client.post(
        f"/emergency/alerts/{notification.id}/resolve", params={"organizationId": ORG_A}, headers=foreign,
    )

    assert as_own_org.status_code == 404
    assert as_foreign_org.status_code == 403
    assert persistence.emergency_notifications[notification.id].status == EmergencyStatus.PENDING


@pytest.mark.asyncio
async def test_resolve_keeps_first_resolution_when_read_was_stale(authed_client, persistence, monkeypatch):
    resolved_at = utcnow() - timedelta(minutes=5)
    notification = await persistence.insert_emergency_notification(EmergencyNotification(
        organization_id=ORG_A,
        tool_call_id="tc-1",
        status=EmergencyStatus.RESOLVED,
        resolved_by="user-z",
        resolved_at=resolved_at,
        metadata={"resolution_notes": "Technician on site"},
    ))
    real_get = persistence.get_emergency_notification
    reads = []

    async def stale_then_real(organization_id, notification_id):
        reads.append(notification_id)
        current = await real_get(organization_id, notification_id)
        if len(reads) == 1:
            # Read taken before the other resolver committed
            return current.model_copy(update={
                "status": EmergencyStatus.SENT, "resolved_by": None, "resolved_at": None,
            })
        return current

    monkeypatch.setattr(persistence, "get_emergency_notification", stale_then_real)

    response = await authed_client.post(
        f"/emergency/alerts/{notification.id}/resolve",
        params={"organizationId": ORG_A},
        json={"notes": "Gas shut off"},
    )

    data = response.json()["data"]
    assert data["status"] == "resolved"
    assert data["resolved_by"] == "user-z"
    assert data["metadata"]["resolution_notes"] == "Technician on site"
    stored = persistence.emergency_notifications[notification.id]
    assert stored.resolved_by == "user-z"
    assert stored.resolved_at == resolved_at


@pytest.mark.asyncio
async def test_detect_emergency_pages_staff(authed_client, senders):
    response = await authed_client.post("/emergency/detect", json={
        "organizationId": ORG_A,
        "industryCode": "hvac",
        "callData": {
            "transcript": "This is an emergency, no heat and a gas leak",
            "customerName": "Pat",
            "customerPhone": "+15035557777",
            "customerAddress": "12 Main St",
        },
        "context": {"temperature": 20},
    })

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["result"]["urgencyLevel"] == "emergency"
    assert body["result"]["smsAlertsSent"] is True
    assert body["result"]["workflowId"]
    assert any(m.to == "+15035550300" for m in senders.all_sent)

    alerts = await authed_client.get("/emergency/alerts", params={"organizationId": ORG_A})
    listed = alerts.json()["data"]
    assert [a["id"] for a in listed] == [body["result"]["notificationId"]]
    assert listed[0]["status"] == "sent"
    assert listed[0]["severity"] == "emergency"


@pytest.mark.asyncio
async def test_detect_requires_transcript(authed_client):
    response = await authed_client.post("/emergency/detect", json={
        "organizationId": ORG_A,
        "callData": {"transcript": "", "customerName": "Pat", "customerPhone": "+15035557777"},
    })
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_detect_for_other_tenant_is_forbidden(authed_client, senders):
    response = await authed_client.post("/emergency/detect", json={
        "organizationId": ORG_B,
        "callData": {"transcript": "emergencia", "customerName": "Ana", "customerPhone": "+13125557777"},
    })
    assert response.status_code == 403
    assert senders.all_sent == []


@pytest.mark.asyncio
async def test_alerts_filter_by_status_and_tenant(authed_client, persistence):
    await persistence.insert_emergency_notification(EmergencyNotification(
        organization_id=ORG_A, tool_call_id="tc-1", status=EmergencyStatus.RESOLVED,
    ))
    await persistence.insert_emergency_notification(EmergencyNotification(
        organization_id=ORG_A, tool_call_id="tc-2", status=EmergencyStatus.SENT,
    ))
    await persistence.insert_emergency_notification(EmergencyNotification(
        organization_id=ORG_B, tool_call_id="tc-3", status=EmergencyStatus.RESOLVED,
    ))

    response = await authed_client.get(
        "/emergency/alerts", params={"organizationId": ORG_A, "status": "resolved"}
    )

    data = response.json()["data"]
    assert [a["tool_call_id"] for a in data] == ["tc-1"]


# =============================================================================
# Message log
# =============================================================================

@pytest.fixture
async def message_log(persistence):
    now = utcnow()
    rows = [
        ("oldest", MessageDirection.OUTBOUND, ORG_A, now - timedelta(hours=3)),
        ("older", MessageDirection.OUTBOUND, ORG_A, now - timedelta(hours=2)),
        ("recent", MessageDirection.OUTBOUND, ORG_A, now - timedelta(hours=1)),
        ("reply", MessageDirection.INBOUND, ORG_A, now - timedelta(minutes=30)),
        ("foreign", MessageDirection.OUTBOUND, ORG_B, now - timedelta(minutes=10)),
    ]
    for content, direction, organization_id, created_at in rows:
        await persistence.insert_message(MessageRecord(
            organization_id=organization_id,
            direction=direction,
            phone_number="+15035551002",
            content=content,
            status=MessageStatus.DELIVERED,
            created_at=created_at,
        ))
    return now


@pytest.mark.asyncio
async def test_communications_are_paged_newest_first(authed_client, message_log):
    first = (await authed_client.get(
        "/sms/communications", params={"organizationId": ORG_A, "limit": 2}
    )).json()
    second = (await authed_client.get(
        "/sms/communications", params={"organizationId": ORG_A, "limit": 2, "offset": 2}
    )).json()

    assert [m["content"] for m in first["data"]] == ["reply", "recent"]
    assert first["pagination"] == {"limit": 2, "offset": 0, "hasMore": True}
    assert [m["content"] for m in second["data"]] == ["older", "oldest"]
    assert second["pagination"]["hasMore"] is False


@pytest.mark.asyncio
async def test_communications_filters(authed_client, message_log):
    inbound = (await authed_client.get(
        "/sms/communications", params={"organizationId": ORG_A, "direction": "inbound"}
    )).json()
    # Naive timestamps are read as UTC
    since = (message_log - timedelta(minutes=90)).replace(tzinfo=None).isoformat()
    recent = (await authed_client.get(
        "/sms/communications", params={"organizationId": ORG_A, "startDate": since}
    )).json()

    assert [m["content"] for m in inbound["data"]] == ["reply"]
    assert [m["content"] for m in recent["data"]] == ["reply", "recent"]


@pytest.mark.asyncio
async def test_communications_are_tenant_scoped(authed_client):
    response = await authed_client.get("/sms/communications", params={"organizationId": ORG_B})
    assert response.status_code == 403


# =============================================================================
# Service endpoints
# =============================================================================

@pytest.mark.asyncio
async def test_health(client):
    assert (await client.get("/health")).json() == {"status": "healthy"}
    assert (await client.get("/")).json()["status"] == "ok"
