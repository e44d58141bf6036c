from typing import Any, Awaitable, Callable, Dict

from serviceai.container import Services
from serviceai.models import ToolCall, ToolCallResult
from serviceai.utils.errors import APIError
from serviceai.utils.logging import logger

from .transfer_call import transfer_call
from .escalate_emergency import escalate_emergency
from .check_availability import check_availability

ToolHandler = Callable[[Services, ToolCall], Awaitable[Dict[str, Any]]]

TOOLS: Dict[str, ToolHandler] = {
    "transfer_call": transfer_call,
    "transferCall": transfer_call,
    "transfer_to_human": transfer_call,
    "escalate_emergency": escalate_emergency,
    "emergency_escalate": escalate_emergency,
    "check_availability": check_availability,
    "checkAvailability": check_availability,
}


async def run_tool(services: Services, call: ToolCall) -> ToolCallResult:
    """
    Execute one tool call. Never raises: the voice assistant needs a
    {toolCallId, result} pair for every call, failures included.
    """
    handler = TOOLS.get(call.name)
    if handler is None:
        logger.warning(f"⚠️  Unknown tool '{call.name}' (flagged for review)")
        return ToolCallResult(
            toolCallId=call.tool_call_id,
            result={"success": False, "error": f"Unknown tool: {call.name}"},
        )

    try:
        result = await handler(services, call)
    except APIError as e:
        logger.error(f"❌ Tool {call.name} failed: {e.message}")
        result = {"success": False, "error": e.message}
    except Exception as e:
        logger.exception(f"❌ Tool {call.name} crashed")
        result = {"success": False, "error": str(e) if services.settings.environment == "development" else "Tool failed"}
    return ToolCallResult(toolCallId=call.tool_call_id, result=result)


__all__ = [
    "TOOLS",
    "run_tool",
    "transfer_call",
    "escalate_emergency",
    "check_availability",
]
