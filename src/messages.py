"""
JSON-RPC 2.0 message shapes and the MCP results this package consumes.

Incoming data is validated with pydantic models; outgoing messages are built
as plain dicts by the make_* helpers so that only the members JSON-RPC
expects end up on the wire.

Message kinds, by shape:

    request        method + id
    notification   method, no id
    response       id + exactly one of result / error, no method
"""

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, model_validator

RequestId = Union[StrictInt, StrictStr]

# Standard JSON-RPC error codes used when answering peer requests.
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class ErrorObject(BaseModel):
    code: int
    message: str
    data: Any = None


class JSONRPCMessage(BaseModel):
    """Any decoded frame. Shape rules are enforced in _check_shape."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"]
    id: RequestId | None = None
    method: str | None = None
    params: dict[str, Any] | list[Any] | None = None
    result: Any = None
    error: ErrorObject | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "JSONRPCMessage":
        has_result = "result" in self.model_fields_set
        has_error = "error" in self.model_fields_set
        if self.method is not None:
            if has_result or has_error:
                raise ValueError("a request must not carry result or error")
            return self
        if self.id is None:
            raise ValueError("a message needs a method or an id")
        if has_result == has_error:
            raise ValueError("a response must carry exactly one of result or error")
        return self

    @property
    def is_response(self) -> bool:
        return self.method is None

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None


def make_request(request_id: Any, method: str, params: dict[str, Any] | None = None) -> dict:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def make_error(request_id: Any, code: int, message: str, data: Any = None) -> dict:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


# ---------------------------------------------------------------------------
# MCP results
# ---------------------------------------------------------------------------


class ServerInfo(BaseModel):
    name: str
    version: str


class InitializeResult(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    server_info: ServerInfo = Field(alias="serverInfo")


class WireTool(BaseModel):
    """One entry of a tools/list result, before requirement parsing."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = Field(default=None, alias="inputSchema")
    output_schema: dict[str, Any] | None = Field(default=None, alias="outputSchema")
    requires: list[Any] | None = None
    meta: dict[str, Any] | None = Field(default=None, alias="_meta")


class ListToolsResult(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    tools: list[WireTool]
    next_cursor: str | None = Field(default=None, alias="nextCursor")


class CallToolResult(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    content: list[dict[str, Any]] = Field(default_factory=list)
    structured_content: dict[str, Any] | None = Field(default=None, alias="structuredContent")
    is_error: bool = Field(default=False, alias="isError")

    @property
    def text(self) -> str:
        """The text content blocks joined by newlines."""
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )
