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

import asyncio
import io
import json
from typing import Annotated, Any, Dict, List, Optional

import pytest
from pydantic import Field

from bctb.config.tools import ToolType
from bctb.errors import InvalidQueryError
from bctb.servers.jsonrpc import (
    Dispatcher,
    ErrorCode,
    StdioServer,
    ToolRegistry,
    params_model,
)
from bctb.tools.tools import Tools


class Echo(Tools):
    name = "echo"
    For = ToolType.FOR_QUERY

    async def invoke(
        self,
        text: Annotated[str, Field(description="What to echo")],
        tag_filter: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Echo the arguments back"""
        return {"text": text, "tagFilter": tag_filter, "tags": tags}


class Slow(Tools):
    name = "slow"
    For = ToolType.FOR_QUERY

    async def invoke(self, delay: float = 0.05) -> str:
        """Sleep a little"""
        await asyncio.sleep(delay)
        return "done"


class Rejects(Tools):
    name = "rejects"
    For = ToolType.FOR_QUERY

    async def invoke(self) -> None:
        """Always refuses"""
        raise InvalidQueryError("Query validation failed", violations=["bad"])


class Crashes(Tools):
    name = "crashes"
    For = ToolType.FOR_QUERY

    async def invoke(self) -> None:
        """Always breaks"""
        raise RuntimeError("secret internals")


@pytest.fixture
def dispatcher() -> Dispatcher:
    registry = ToolRegistry()
    for tool in (Echo, Slow, Rejects, Crashes):
        registry.register(tool())
    return Dispatcher(registry)


def request(method: str, params: Any = None, id: Any = 1) -> Dict[str, Any]:
    r = {"jsonrpc": "2.0", "method": method, "id": id}
    if params is not None:
        r["params"] = params
    return r


class TestParamsModel:
    def test_accepts_camel_and_snake_case(self):
        model = params_model(Echo())
        assert model.model_validate({"text": "a", "tagFilter": "x"}).tag_filter == "x"
        assert model.model_validate({"text": "a", "tag_filter": "y"}).tag_filter == "y"

    def test_schema_uses_camel_case(self):
        schema = params_model(Echo()).model_json_schema(by_alias=True)
        assert set(schema["properties"]) == {"text", "tagFilter", "tags"}
        assert schema["required"] == ["text"]
        assert schema["properties"]["text"]["description"] == "What to echo"


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_direct_method_call(self, dispatcher):
        response = await dispatcher.handle(request("echo", {"text": "hi", "tags": ["a"]}))
        assert response == {
            "jsonrpc": "2.0",
            "id": 1,
            "result": {"text": "hi", "tagFilter": None, "tags": ["a"]},
        }

    @pytest.mark.asyncio
    async def test_tools_call_wraps_the_result(self, dispatcher):
        response = await dispatcher.handle(
            request("tools/call", {"name": "echo", "arguments": {"text": "hi"}})
        )
        result = response["result"]
        assert result["isError"] is False
        assert result["structuredContent"]["text"] == "hi"
        assert json.loads(result["content"][0]["text"]) == result["structuredContent"]

    @pytest.mark.asyncio
    async def test_initialize_and_list(self, dispatcher):
        init = await dispatcher.handle(request("initialize", {}))
        assert init["result"]["serverInfo"]["name"] == "bctb-mcp-server"

        listed = await dispatcher.handle(request("tools/list", id="two"))
        assert listed["id"] == "two"
        tools = {t["name"]: t for t in listed["result"]["tools"]}
        assert set(tools) == {"echo", "slow", "rejects", "crashes"}
        assert tools["echo"]["description"] == "Echo the arguments back"
        assert tools["echo"]["inputSchema"]["type"] == "object"

    @pytest.mark.asyncio
    async def test_unknown_method(self, dispatcher):
        response = await dispatcher.handle(request("nope"))
        assert response["error"]["code"] == ErrorCode.METHOD_NOT_FOUND
        assert response["error"]["message"] == "Method not found: nope"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [{}, {"text": 1}, {"text": "a", "extra": True}, ["a"]],
    )
    async def test_invalid_params(self, dispatcher, params):
        response = await dispatcher.handle(request("echo", params))
        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_parse_error(self, dispatcher):
        response = await dispatcher.handle_line(b"{not json")
        assert response == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32700, "message": "Parse error"},
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"method": "ping", "id": 3},
            {"jsonrpc": "1.0", "method": "ping", "id": 3},
            {"jsonrpc": "2.0", "id": 3},
            "ping",
        ],
    )
    async def test_invalid_request(self, dispatcher, payload):
        response = await dispatcher.handle(payload)
        assert response["error"]["code"] == ErrorCode.INVALID_REQUEST
        if isinstance(payload, dict):
            assert response["id"] == 3

    @pytest.mark.asyncio
    async def test_batches_are_rejected(self, dispatcher):
        response = await dispatcher.handle([request("ping")])
        assert response["error"]["code"] == ErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_notifications_get_no_response(self, dispatcher):
        assert await dispatcher.handle({"jsonrpc": "2.0", "method": "ping"}) is None
        assert (
            await dispatcher.handle(
                {"jsonrpc": "2.0", "method": "notifications/initialized"}
            )
            is None
        )
        # errors of notifications are not reported either
        assert await dispatcher.handle({"jsonrpc": "2.0", "method": "nope"}) is None

    @pytest.mark.asyncio
    async def test_application_error(self, dispatcher):
        response = await dispatcher.handle(request("rejects"))
        assert response["error"] == {
            "code": InvalidQueryError.code,
            "message": "Query validation failed",
            "data": {"kind": "InvalidQueryError", "violations": ["bad"]},
        }

    @pytest.mark.asyncio
    async def test_unexpected_error_hides_details(self, dispatcher):
        response = await dispatcher.handle(request("crashes"))
        assert response["error"] == {"code": -32603, "message": "Internal error"}


class TestStdioServer:
    async def serve(self, dispatcher, *lines: bytes) -> List[Dict[str, Any]]:
        reader = asyncio.StreamReader()
        for line in lines:
            reader.feed_data(line)
        reader.feed_eof()
        out = io.BytesIO()
        await StdioServer(dispatcher, out).serve(reader)
        return [json.loads(l) for l in out.getvalue().splitlines()]

    @pytest.mark.asyncio
    async def test_one_response_per_request(self, dispatcher):
        responses = await self.serve(
            dispatcher,
            json.dumps(request("ping", id=1)).encode() + b"\n",
            b"\n",
            json.dumps({"jsonrpc": "2.0", "method": "ping"}).encode() + b"\n",
            b"garbage\n",
            json.dumps(request("echo", {"text": "x"}, id=2)).encode() + b"\n",
        )
        assert len(responses) == 3
        by_id = {r["id"]: r for r in responses}
        assert by_id[1]["result"] == {}
        assert by_id[2]["result"]["text"] == "x"
        assert by_id[None]["error"]["code"] == ErrorCode.PARSE_ERROR

    @pytest.mark.asyncio
    async def test_in_flight_requests_finish_after_eof(self, dispatcher):
        responses = await self.serve(
            dispatcher,
            json.dumps(request("slow", {"delay": 0.1}, id="late")).encode() + b"\n",
            json.dumps(request("ping", id="early")).encode() + b"\n",
        )
        assert [r["id"] for r in responses] == ["early", "late"]
        assert responses[1]["result"] == "done"
