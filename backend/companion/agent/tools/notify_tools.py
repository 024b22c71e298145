from companion.agent.tool_registry import Tool, ToolContext, define_tool
from companion.notifications import Notification, NotificationCenter, NotificationType


def create_notify_tool(center: NotificationCenter) -> Tool:
    @define_tool(
        name="notify",
        description="Show a notification to the user.",
        parameters={
            "title": {"type": "string", "description": "Notification title", "required": True},
            "body": {"type": "string", "description": "Notification text", "required": True},
            "type": {
                "type": "string",
                "description": "How to present it",
                "enum": [t.value for t in NotificationType],
                "default": "toast",
            },
            "sound": {"type": "boolean", "description": "Play a sound", "default": False},
        },
    )
    async def notify(args: dict, ctx: ToolContext) -> dict:
        report = await center.send(Notification.from_payload(args))
        return {"delivered": report.delivered, "reason": report.reason}

    return notify
