"""
Default tool catalogue: one entry per exposed tool, each bound to a
capability supplied by the caller.
"""
from __future__ import annotations

from typing import Any

from .capabilities import (
    BrowserCapability,
    MessagingCapability,
    NotificationCapability,
    SpeechCapability,
)
from .registry import ToolDefinition, ToolHandler, ToolRegistry

# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

PLAY_NOTIFICATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {
            "type": "string",
            "enum": ["default", "success", "error", "warning"],
            "description": "Type of notification sound",
            "default": "default",
        },
        "message": {
            "type": "string",
            "description": "Optional message to show alongside the sound",
        },
    },
}

SHOW_MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "message": {"type": "string", "description": "Message to display"},
        "type": {
            "type": "string",
            "enum": ["info", "warning", "error"],
            "description": "Message type",
            "default": "info",
        },
    },
    "required": ["message"],
}

PLAY_ATTENTION_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

FLASH_WINDOW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "count": {
            "type": "number",
            "description": "How many times to flash the editor's taskbar button (Windows; beeps elsewhere)",
            "default": 5,
        },
    },
}

OPEN_URL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"url": {"type": "string", "description": "URL to open in the local browser"}},
    "required": ["url"],
}

SPEAK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "text": {"type": "string", "description": "Text to read aloud"},
        "voice": {"type": "string", "description": "Optional voice name"},
    },
    "required": ["text"],
}


# ---------------------------------------------------------------------------
# Handlers: adapt the flat argument object to a capability call
# ---------------------------------------------------------------------------

def _play_notification(notifier: NotificationCapability, messenger: MessagingCapability) -> ToolHandler:
    async def handler(args: dict[str, Any]) -> dict[str, Any]:
        played = await notifier.play_sound(str(args.get("type") or "default"))
        message = args.get("message")
        if message:
            await messenger.show_message(str(message), "info")
        return {"success": bool(played)}

    return handler


def _show_message(messenger: MessagingCapability) -> ToolHandler:
    async def handler(args: dict[str, Any]) -> dict[str, Any]:
        await messenger.show_message(str(args.get("message") or ""), str(args.get("type") or "info"))
        return {"success": True}

    return handler


def _play_attention(notifier: NotificationCapability) -> ToolHandler:
    async def handler(args: dict[str, Any]) -> dict[str, Any]:
        return {"success": bool(await notifier.play_attention())}

    return handler


def _flash_window(notifier: NotificationCapability) -> ToolHandler:
    async def handler(args: dict[str, Any]) -> dict[str, Any]:
        raw = args.get("count", 5)
        count = int(raw) if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0 else 5
        return {"success": bool(await notifier.flash_window(count))}

    return handler


def _open_url(browser: BrowserCapability) -> ToolHandler:
    async def handler(args: dict[str, Any]) -> Any:
        return await browser.open_url(str(args["url"]))

    return handler


def _speak(speech: SpeechCapability) -> ToolHandler:
    async def handler(args: dict[str, Any]) -> Any:
        voice = args.get("voice")
        return await speech.speak(str(args["text"]), str(voice) if voice else None)

    return handler


def build_registry(
    notifier: NotificationCapability,
    messenger: MessagingCapability,
    *,
    browser: BrowserCapability | None = None,
    speech: SpeechCapability | None = None,
) -> ToolRegistry:
    """Bind the default catalogue to the given capabilities.

    Browser and speech tools are only advertised when a capability for them
    is supplied.
    """
    tools = [
        ToolDefinition(
            name="play_notification",
            description="Play a notification sound on the local machine. Use this to alert the user.",
            input_schema=PLAY_NOTIFICATION_SCHEMA,
            handler=_play_notification(notifier, messenger),
        ),
        ToolDefinition(
            name="show_message",
            description="Show a message notification to the local user",
            input_schema=SHOW_MESSAGE_SCHEMA,
            handler=_show_message(messenger),
        ),
        ToolDefinition(
            name="play_attention",
            description="Play attention-grabbing sound (multiple beeps) to get user attention",
            input_schema=PLAY_ATTENTION_SCHEMA,
            handler=_play_attention(notifier),
        ),
        ToolDefinition(
            name="flash_window",
            description="Flash the editor window's taskbar button to get user attention",
            input_schema=FLASH_WINDOW_SCHEMA,
            handler=_flash_window(notifier),
        ),
    ]
    if browser is not None:
        tools.append(ToolDefinition(
            name="open_url",
            description="Open a URL in the browser on the local machine",
            input_schema=OPEN_URL_SCHEMA,
            handler=_open_url(browser),
        ))
    if speech is not None:
        tools.append(ToolDefinition(
            name="speak",
            description="Read text aloud on the local machine using speech synthesis",
            input_schema=SPEAK_SCHEMA,
            handler=_speak(speech),
        ))
    return ToolRegistry(tools)
