from __future__ import annotations

# JSON-RPC 2.0 error codes used by the MCP endpoint.
PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
TOOL_EXECUTION_ERROR = -32000


class ToolRequestError(RuntimeError):
    code = TOOL_EXECUTION_ERROR

    def __init__(self, message: str, *, tool: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool


class UnknownToolError(ToolRequestError):
    code = INVALID_PARAMS

    def __init__(self, tool: str) -> None:
        super().__init__(f"Unknown tool: {tool}", tool=tool)


class InvalidParamsError(ToolRequestError):
    code = INVALID_PARAMS


class ToolExecutionError(ToolRequestError):
    """A capability raised while handling a tool call; ``detail`` is its error text."""

    def __init__(self, tool: str, detail: str) -> None:
        super().__init__(f"Tool error: {detail}", tool=tool)
        self.detail = detail
