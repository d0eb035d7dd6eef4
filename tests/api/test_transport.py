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
Unit tests for the aiohttp client wrapper in transport.py
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import ClientResponse
from pydantic import BaseModel

from bctb.api.transport import AsyncHttpClient, error_message
from bctb.errors import NetworkError, QueryExecutionError


def _response(status=200, text="", reason="OK"):
    response = MagicMock(spec=ClientResponse)
    response.status = status
    response.reason = reason
    response.method = "GET"
    response.url = "https://example.com/x"
    response.text = AsyncMock(return_value=text)
    return response


class Item(BaseModel):
    name: str


class TestErrorMessage:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,expected",
        [
            ('{"error": {"message": "nested"}}', "nested"),
            ('{"message": "flat"}', "flat"),
            ("plain text body", "plain text body"),
            ("", "Bad Gateway"),
        ],
    )
    async def test_extraction(self, text, expected):
        assert await error_message(_response(502, text, reason="Bad Gateway")) == expected


class TestAsyncHttpClient:
    def test_headers(self):
        client = AsyncHttpClient("https://example.com/", "secret", headers={"X-A": "1"})
        assert client.uri == "https://example.com"
        assert client.headers["Authorization"] == "Bearer secret"
        assert client.headers["X-A"] == "1"

    def test_absolute_urls_pass_through(self):
        client = AsyncHttpClient("https://example.com")
        assert client._url("/a") == "https://example.com/a"
        assert client._url("https://raw.example.org/f.kql") == "https://raw.example.org/f.kql"

    @pytest.mark.asyncio
    async def test_deserialize_model(self):
        client = AsyncHttpClient("https://example.com")
        item = await client.deserialize(_response(text='{"name": "x"}'), Item)
        assert item == Item(name="x")
        items = await client.deserialize(
            _response(text='[{"name": "a"}, {"name": "b"}]'), Item, top_level_list=True
        )
        assert [i.name for i in items] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_deserialize_text(self):
        client = AsyncHttpClient("https://example.com")
        assert await client.deserialize(_response(text="raw | take 1"), str) == "raw | take 1"

    @pytest.mark.asyncio
    async def test_unparsable_body(self):
        client = AsyncHttpClient("https://example.com")
        with pytest.raises(QueryExecutionError, match="Unable to parse response"):
            await client.deserialize(_response(text="<html>"), None)

    @pytest.mark.asyncio
    async def test_generic_status_error(self):
        client = AsyncHttpClient("https://example.com")
        with pytest.raises(QueryExecutionError) as e:
            await client.raise_for_status(_response(500, '{"message": "boom"}'))
        assert e.value.status == 500
        assert e.value.message == "HTTP 500: boom"

    @pytest.mark.asyncio
    async def test_response_hook_sees_every_response(self):
        seen = []
        client = AsyncHttpClient("https://example.com", response_hook=seen.append)
        response = _response(text='{"name": "x"}')
        await client.handle_response(response, Item)
        assert seen == [response]

    @pytest.mark.asyncio
    async def test_connection_failure(self, unused_tcp_port):
        client = AsyncHttpClient(f"http://127.0.0.1:{unused_tcp_port}", timeout=5)
        with pytest.raises(NetworkError):
            await client.get("/anything")
