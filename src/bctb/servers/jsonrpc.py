#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
"""
JSON-RPC 2.0 over a fixed tool table.

Every tool is callable by its own method name or through ``tools/call``;
``initialize``, ``ping`` and ``tools/list`` are answered for MCP style
clients. Parameters are validated against a model derived from the tool's
``invoke`` signature before the tool runs. Application errors carry their
``kind`` in ``error.data``; unexpected errors are reported without details.
"""
import asyncio
import inspect
import json
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, BinaryIO, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, ValidationError, create_model
from pydantic.alias_generators import to_camel

from bctb import __version__
from bctb.errors import TelemetryError
from bctb.log import logger
from bctb.tools.tools import Tools

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "bctb-mcp-server"
# stdin lines can carry large queries
STDIO_LINE_LIMIT = 16 * 1024 * 1024


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class RpcError(Exception):
    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class Request(BaseModel):
    jsonrpc: Literal["2.0"]
    method: str
    params: Optional[Union[Dict[str, Any], List[Any]]] = None
    id: Optional[Union[int, str]] = None
    model_config = ConfigDict(extra="forbid")

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


def params_model(tool: Tools) -> Type[BaseModel]:
    """Build the input model of a tool from the signature of its ``invoke``"""
    fields = {}
    for p in inspect.signature(tool.invoke).parameters.values():
        if p.kind in (p.VAR_POSITIONAL, p.VAR_KEYWORD):
            continue
        annotation = Any if p.annotation is p.empty else p.annotation
        default = ... if p.default is p.empty else p.default
        fields[p.name] = (annotation, default)

    return create_model(
        f"{type(tool).__name__}Params",
        __config__=ConfigDict(
            extra="forbid", alias_generator=to_camel, populate_by_name=True
        ),
        **fields,
    )


def _description(tool: Tools) -> str:
    return inspect.cleandoc(tool.invoke.__doc__ or "")


@dataclass(frozen=True)
class RegisteredTool:
    name: str
    description: str
    params: Type[BaseModel]
    tool: Tools

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.params.model_json_schema(by_alias=True),
        }


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, RegisteredTool] = {}

    def register(self, tool: Tools):
        self._tools[tool.name] = RegisteredTool(
            name=tool.name,
            description=_description(tool),
            params=params_model(tool),
            tool=tool,
        )

    def get(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def describe(self) -> List[Dict[str, Any]]:
        return [t.describe() for t in self._tools.values()]

    async def call(self, name: str, arguments: Optional[Dict[str, Any]]) -> Any:
        if (registered := self.get(name)) is None:
            raise RpcError(ErrorCode.METHOD_NOT_FOUND, f"Method not found: {name}")

        try:
            params = registered.params.model_validate(arguments or {})
        except ValidationError as e:
            raise RpcError(
                ErrorCode.INVALID_PARAMS,
                f"Invalid params for {name}",
                data=[
                    {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                    for err in e.errors()
                ],
            ) from e

        kw = {field: getattr(params, field) for field in type(params).model_fields}
        return await registered.tool.invoke(**kw)


def success(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def failure(
    request_id: Any, code: int, message: str, data: Optional[Any] = None
) -> Dict[str, Any]:
    error = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def _request_id(payload: Any) -> Union[int, str, None]:
    if isinstance(payload, dict) and isinstance(payload.get("id"), (int, str)):
        return payload["id"]
    return None


class Dispatcher:
    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def handle_line(self, line: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        try:
            payload = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger("jsonrpc").warning("Unparsable request", error=str(e))
            return failure(None, ErrorCode.PARSE_ERROR, "Parse error")
        return await self.handle(payload)

    async def handle(self, payload: Any) -> Optional[Dict[str, Any]]:
        """Handle one decoded request; returns None for notifications"""
        if isinstance(payload, list):
            return failure(
                None, ErrorCode.INVALID_REQUEST, "Batch requests are not supported"
            )
        try:
            request = Request.model_validate(payload)
        except ValidationError:
            return failure(
                _request_id(payload), ErrorCode.INVALID_REQUEST, "Invalid Request"
            )

        log = logger("jsonrpc").bind(method=request.method, id=request.id)
        try:
            result = await self.dispatch(request.method, request.params)
            response = success(request.id, result)
        except RpcError as e:
            log.info("Request rejected", code=e.code, error=e.message)
            response = failure(request.id, e.code, e.message, e.data)
        except TelemetryError as e:
            log.warning("Request failed", kind=e.kind, error=e.message)
            response = failure(request.id, e.code, e.message, e.to_error_data())
        except Exception:
            log.exception("Unexpected error while handling request")
            response = failure(request.id, ErrorCode.INTERNAL_ERROR, "Internal error")

        return None if request.is_notification else response

    async def dispatch(
        self, method: str, params: Union[Dict[str, Any], List[Any], None]
    ) -> Any:
        if isinstance(params, list):
            raise RpcError(
                ErrorCode.INVALID_PARAMS, "Positional params are not supported"
            )

        match method:
            case "initialize":
                return {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": SERVER_NAME, "version": __version__},
                }
            case "ping":
                return {}
            case "tools/list":
                return {"tools": self.registry.describe()}
            case "tools/call":
                params = params or {}
                if not isinstance(name := params.get("name"), str):
                    raise RpcError(ErrorCode.INVALID_PARAMS, "tools/call needs a tool name")
                arguments = params.get("arguments")
                if arguments is not None and not isinstance(arguments, dict):
                    raise RpcError(
                        ErrorCode.INVALID_PARAMS, "tools/call arguments must be an object"
                    )
                result = await self.registry.call(name, arguments)
                return {
                    "content": [{"type": "text", "text": json.dumps(result, default=str)}],
                    "structuredContent": result,
                    "isError": False,
                }
            case str() if method.startswith("notifications/"):
                return None
        return await self.registry.call(method, params)


async def stdin_reader(limit: int = STDIO_LINE_LIMIT) -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
    )
    return reader


class StdioServer:
    """
    Newline delimited JSON-RPC. Each request runs in its own task, responses
    are written one per line in completion order. At end of input the
    requests still in flight are completed before ``serve`` returns.
    """

    def __init__(self, dispatcher: Dispatcher, output: BinaryIO):
        self.dispatcher = dispatcher
        self.output = output
        self._write_lock = asyncio.Lock()
        self._inflight: set[asyncio.Task] = set()

    async def write(self, response: Dict[str, Any]):
        data = json.dumps(response, default=str).encode("utf-8") + b"\n"
        async with self._write_lock:
            self.output.write(data)
            self.output.flush()

    async def _respond(self, line: bytes):
        if (response := await self.dispatcher.handle_line(line)) is not None:
            await self.write(response)

    def _spawn(self, line: bytes):
        task = asyncio.create_task(self._respond(line))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def serve(self, reader: asyncio.StreamReader):
        logger("stdio").info("Listening on stdin")
        while True:
            try:
                line = await reader.readline()
            except ValueError as e:
                logger("stdio").error("Request line too long", error=str(e))
                await self.write(failure(None, ErrorCode.PARSE_ERROR, "Parse error"))
                continue
            if not line:
                break
            if line.strip():
                self._spawn(line)

        if self._inflight:
            logger("stdio").info("Input closed, draining", inflight=len(self._inflight))
            await asyncio.gather(*self._inflight)
        logger("stdio").info("Stdio server stopped")
