from __future__ import annotations

import json
import logging
from typing import Any

from .errors import InvalidParamsError, ToolExecutionError, UnknownToolError
from .registry import ToolRegistry

log = logging.getLogger("sshbridge-tools")


class Dispatcher:
    """Resolve a tool call against the registry and run its bound capability.

    Only the presence of ``required`` arguments is checked here; the rest of
    the input schema is advertised for client-side validation.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    def list_tools(self) -> list[dict[str, Any]]:
        return self.registry.list_tools()

    async def dispatch(self, name: str, args: dict[str, Any] | None = None) -> Any:
        tool = self.registry.get(name)
        if tool is None:
            log.warning("Unknown tool requested: %s", name)
            raise UnknownToolError(name)
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise InvalidParamsError(f"{name}: arguments must be an object", tool=name)
        missing = [key for key in tool.required if args.get(key) is None]
        if missing:
            raise InvalidParamsError(f"{name}: missing required argument(s): {', '.join(missing)}", tool=name)

        log.info("Tool call: %s %s", name, self._format_args(args))
        try:
            return await tool.handler(args)
        except Exception as exc:  # noqa: BLE001
            log.warning("Tool %s failed: %s", name, exc)
            raise ToolExecutionError(name, str(exc) or type(exc).__name__) from exc

    def _format_args(self, args: dict[str, Any]) -> str:
        try:
            return json.dumps(args, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(args)
