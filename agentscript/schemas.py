"""Pydantic schemas for MCP JSON-RPC traffic.

Every message read from a tool server is validated against these models
before the connection manager looks at it.
"""

from __future__ import annotations
import json
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"


class JsonRpcRequest(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    id: Optional[int] = None
    method: str
    params: Optional[Dict[str, Any]] = None

    def encode(self) -> bytes:
        """One newline-terminated JSON line; notifications carry no id."""
        return (self.model_dump_json(exclude_none=True) + "\n").encode("utf-8")


class JsonRpcError(BaseModel):
    code: int = 0
    message: str = ""
    data: Any = None


class JsonRpcResponse(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    id: Optional[Union[int, str]] = None
    result: Any = None
    error: Optional[JsonRpcError] = None

    @property
    def is_response(self) -> bool:
        return self.id is not None


class MCPTool(BaseModel):
    """Tool advertised by a server in ``tools/list``."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, v: Any) -> str:
        return "" if v is None else str(v)


class ToolContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: Optional[str] = None


class ToolCallResult(BaseModel):
    """Result of ``tools/call``."""
    model_config = ConfigDict(populate_by_name=True)

    content: List[ToolContent] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")
    structured_content: Optional[Any] = Field(default=None, alias="structuredContent")

    @field_validator("content", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if isinstance(v, dict):
            return [v]
        return v

    def text(self) -> str:
        texts = [c.text for c in self.content if c.type == "text" and c.text is not None]
        if texts:
            return "\n".join(texts)
        if self.structured_content is not None:
            return json.dumps(self.structured_content, ensure_ascii=False)
        return ""


def decode_message(line: bytes) -> JsonRpcResponse:
    """Parse one line from a server; raises ValueError on anything malformed."""
    try:
        payload = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"invalid JSON-RPC line: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("JSON-RPC message is not an object")
    try:
        return JsonRpcResponse.model_validate(payload)
    except ValidationError as e:
        raise ValueError(f"invalid JSON-RPC message: {e}") from e


def parse_tools(result: Any) -> List[MCPTool]:
    tools = result.get("tools", []) if isinstance(result, dict) else []
    return [MCPTool.model_validate(t) for t in tools]


def tool_result_text(result: Any) -> str:
    """Join the text content of a tool result, falling back to the raw JSON."""
    if isinstance(result, dict):
        try:
            parsed = ToolCallResult.model_validate(result)
        except ValidationError:
            return json.dumps(result, ensure_ascii=False)
        if parsed.content or parsed.structured_content is not None:
            return parsed.text()
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False)


def parse_tool_args(json_args: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """Tool arguments must be a JSON object (empty means no arguments)."""
    if json_args is None:
        return {}
    if isinstance(json_args, dict):
        return json_args
    text = json_args.strip()
    if not text:
        return {}
    try:
        args = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON arguments: {e}") from e
    if not isinstance(args, dict):
        raise ValueError("tool arguments must be a JSON object")
    return args
