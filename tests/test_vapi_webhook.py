"""
Tests for the Vapi webhook and per-tool function endpoints.

Coverage:
- Signature check on the raw body
- Unified tool-calls shape and per-tool shape
- Transfer and emergency escalation idempotency by toolCallId
- Results envelope for unknown tools and non-tool messages
"""
import json

import pytest

from serviceai.models import Appointment, EmergencyStatus, MessageStatus, TemplateCategory
from serviceai.utils.webhook_security import compute_vapi_signature

from tests.conftest import ORG_A


def tool_calls(*calls, organization_id=ORG_A, assistant_id=None, language=None):
    metadata = {}
    if organization_id:
        metadata["organizationId"] = organization_id
    if language:
        metadata["language"] = language
    return {
        "message": {
            "type": "tool-calls",
            "call": {"id": "call-1", "assistantId": assistant_id, "metadata": metadata},
            "toolCallList": [
                {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}
                for call_id, name, arguments in calls
            ],
        }
    }


EMERGENCY_ARGS = {
    "emergency_type": "gas leak",
    "severity": "critical",
    "location": "12 Main St",
    "customer_name": "John",
    "customer_phone": "+15035551002",
}


@pytest.mark.asyncio
async def test_transfer_call_returns_transfer_instruction(client, persistence):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "transfer_call", {"reason": "billing question"}),
    ))

    assert response.status_code == 200
    result = response.json()["results"][0]
    assert result["toolCallId"] == "tc-1"
    assert result["result"]["success"] is True
    assert result["result"]["action"] == "transfer"
    assert result["result"]["transferTo"] == "+15035550200"
    assert result["result"]["transferMode"] == "warm"
    assert len(persistence.call_transfers) == 1


@pytest.mark.asyncio
async def test_transfer_replay_logs_once(client, persistence):
    payload = tool_calls(("tc-1", "transferCall", {"urgency": "high"}))
    first = await client.post("/webhooks/vapi", json=payload)
    second = await client.post("/webhooks/vapi", json=payload)

    assert first.json() == second.json()
    assert len(persistence.call_transfers) == 1


@pytest.mark.asyncio
async def test_transfer_message_follows_call_language(client):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "transfer_to_human", {}), language="es",
    ))
    assert response.json()["results"][0]["result"]["message"].startswith("Permítame comunicarle")


@pytest.mark.asyncio
async def test_emergency_transfer_goes_to_emergency_phone(client):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "transfer_call", {"urgency": "emergency"}),
    ))
    assert response.json()["results"][0]["result"]["transferTo"] == "+15035550300"


@pytest.mark.asyncio
async def test_organization_resolved_from_assistant(client, persistence):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "transfer_call", {}), organization_id=None, assistant_id="asst-b",
    ))
    result = response.json()["results"][0]["result"]
    assert result["transferTo"] == "+13125550200"
    # Org B speaks Spanish by default
    assert result["message"].startswith("Permítame")


@pytest.mark.asyncio
async def test_unresolvable_organization_still_returns_results(client):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "transfer_call", {}), organization_id=None,
    ))
    assert response.status_code == 200
    result = response.json()["results"][0]
    assert result["toolCallId"] == "tc-1"
    assert result["result"]["success"] is False


@pytest.mark.asyncio
async def test_emergency_escalation_logs_sends_and_transfers(client, persistence, senders, on_call_contact):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-911", "escalate_emergency", EMERGENCY_ARGS),
    ))

    result = response.json()["results"][0]["result"]
    assert result["action"] == "transfer"
    assert result["priority"] == "emergency"
    assert result["transferTo"] == "+15035550400"
    assert "Dave" in result["message"]
    assert result["metadata"]["smsSent"] is True

    notification = next(iter(persistence.emergency_notifications.values()))
    assert notification.status == EmergencyStatus.SENT
    assert notification.sms_message_id is not None
    assert notification.tool_call_id == "tc-911"

    assert len(senders.all_sent) == 1
    assert "gas leak" in senders.all_sent[0].body
    record = next(iter(persistence.messages.values()))
    assert record.category == TemplateCategory.EMERGENCY
    assert record.status == MessageStatus.SENT


@pytest.mark.asyncio
async def test_emergency_replay_sends_one_sms(client, persistence, senders, on_call_contact):
    payload = tool_calls(("tc-911", "emergency_escalate", EMERGENCY_ARGS))
    first = await client.post("/webhooks/vapi", json=payload)
    second = await client.post("/webhooks/vapi", json=payload)

    assert first.json()["results"][0]["result"]["transferTo"] == second.json()["results"][0]["result"]["transferTo"]
    assert len(persistence.emergency_notifications) == 1
    assert len(senders.all_sent) == 1


@pytest.mark.asyncio
async def test_emergency_sms_failure_still_transfers(client, persistence, senders):
    senders.twilio.permanent()

    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-911", "escalate_emergency", EMERGENCY_ARGS),
    ))

    result = response.json()["results"][0]["result"]
    assert result["success"] is True
    assert result["action"] == "transfer"
    assert result["transferTo"] == "+15035550300"
    assert result["metadata"]["smsSent"] is False
    notification = next(iter(persistence.emergency_notifications.values()))
    assert notification.status == EmergencyStatus.PENDING
    assert notification.sms_error


@pytest.mark.asyncio
async def test_string_arguments_are_parsed(client, persistence):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "transfer_call", json.dumps({"reason": "warranty"})),
    ))
    assert response.json()["results"][0]["result"]["success"] is True
    assert next(iter(persistence.call_transfers.values())).reason == "warranty"


@pytest.mark.asyncio
async def test_multiple_tool_calls_answered_in_order(client):
    response = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "transfer_call", {}),
        ("tc-2", "book_pizza", {}),
    ))
    results = response.json()["results"]
    assert [r["toolCallId"] for r in results] == ["tc-1", "tc-2"]
    assert results[1]["result"] == {"success": False, "error": "Unknown tool: book_pizza"}


@pytest.mark.asyncio
async def test_check_availability_skips_booked_slots(client, persistence):
    first = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-1", "check_availability", {"date": "tomorrow"}),
    ))
    open_before = first.json()["results"][0]["result"]["slots"]
    assert open_before

    booked = open_before[0]["start"]
    persistence.add_appointment(Appointment(
        organization_id=ORG_A,
        customer_id="cust-en",
        scheduled_start=booked,
        duration_minutes=60,
    ))
    second = await client.post("/webhooks/vapi", json=tool_calls(
        ("tc-2", "check_availability", {"date": "tomorrow"}),
    ))
    open_after = second.json()["results"][0]["result"]["slots"]

    assert booked not in [s["start"] for s in open_after]
    assert len(open_after) == len(open_before) - 1


@pytest.mark.asyncio
async def test_status_update_is_acknowledged(client):
    response = await client.post("/webhooks/vapi", json={
        "message": {"type": "status-update", "status": "in-progress", "call": {"id": "call-1"}},
    })
    assert response.status_code == 200
    assert response.json() == {"success": True}


@pytest.mark.asyncio
async def test_unknown_message_type_is_acknowledged(client):
    response = await client.post("/webhooks/vapi", json={"message": {"type": "speech-update"}})
    assert response.status_code == 200
    assert response.json()["handled"] is False


# =============================================================================
# Signatures
# =============================================================================

@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(client, services, persistence):
    services.settings.vapi_webhook_secret = "vapi-secret"
    response = await client.post(
        "/webhooks/vapi",
        content=json.dumps(tool_calls(("tc-1", "transfer_call", {}))),
        headers={"Content-Type": "application/json", "X-Vapi-Signature": "sha256=deadbeef"},
    )
    assert response.status_code == 401
    assert response.json()["results"] == []
    assert persistence.call_transfers == {}


@pytest.mark.asyncio
async def test_valid_signature_over_raw_body_is_accepted(client, services):
    services.settings.vapi_webhook_secret = "vapi-secret"
    # Unusual spacing: the signature covers these exact bytes
    body = json.dumps(tool_calls(("tc-1", "transfer_call", {})), indent=3).encode()
    response = await client.post(
        "/webhooks/vapi",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Vapi-Signature": compute_vapi_signature("vapi-secret", body),
        },
    )
    assert response.status_code == 200
    assert response.json()["results"][0]["result"]["success"] is True


# =============================================================================
# Per-tool endpoints
# =============================================================================

@pytest.mark.asyncio
async def test_per_tool_escalation_endpoint(client, persistence, senders):
    payload = {
        "toolCallId": "tc-77",
        "call": {"id": "call-9", "metadata": {"organizationId": ORG_A}},
        "parameters": {**EMERGENCY_ARGS, "language": "es"},
    }
    first = await client.post("/functions/escalate-emergency", json=payload)
    second = await client.post("/functions/escalate-emergency", json=payload)

    result = first.json()["results"][0]
    assert result["toolCallId"] == "tc-77"
    assert result["result"]["message"].startswith("Esta es una situación de emergencia")
    assert second.json() == first.json()
    assert len(senders.all_sent) == 1


@pytest.mark.asyncio
async def test_per_tool_endpoint_requires_tool_call_id(client):
    response = await client.post("/functions/transfer-call", json={"parameters": {}})
    assert response.status_code == 400
    assert response.json()["results"] == []
