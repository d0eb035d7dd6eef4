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
import logging
from http import HTTPStatus
from json import JSONDecodeError, loads
from typing import (
    Any,
    AnyStr,
    Callable,
    Dict,
    Optional,
    TypeAlias,
    Union,
)

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout
from pydantic import BaseModel, ValidationError

from bctb.errors import NetworkError, QueryExecutionError
from bctb.log import logger

DeserializationStrategy: TypeAlias = Union[Callable, BaseModel]
ResponseHook: TypeAlias = Callable[[ClientResponse], None]

DEFAULT_TIMEOUT_SECONDS = 60.0


async def error_message(response: ClientResponse) -> str:
    """Best effort extraction of ``error.message`` from an error body"""
    text = await response.text()
    try:
        body = loads(text)
    except (JSONDecodeError, ValueError):
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return err["message"]
        if isinstance(body.get("message"), str):
            return body["message"]
    return text.strip() or response.reason or HTTPStatus(response.status).phrase


class AsyncHttpClient:
    def __init__(
        self,
        uri: AnyStr,
        token: Optional[AnyStr] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Optional[Dict[str, str]] = None,
        response_hook: Optional[ResponseHook] = None,
    ):
        self.uri = uri.rstrip("/")
        self.token = token
        self.timeout = ClientTimeout(total=timeout)
        self.response_hook = response_hook
        self.headers = {"content-type": "application/json"}
        if token is not None:
            self.headers["Authorization"] = f"Bearer {token}"
        if headers:
            self.headers.update(headers)
        self.update_headers()

    def update_headers(self):
        pass

    async def raise_for_status(self, response: ClientResponse):
        if response.status >= 400:
            message = await error_message(response)
            raise QueryExecutionError(
                f"HTTP {response.status}: {message}", status=response.status
            )

    async def deserialize(
        self,
        response: ClientResponse,
        deser: Optional[DeserializationStrategy],
        top_level_list: bool = False,
    ):
        js = await response.text()
        if deser is str:
            return js
        try:
            if isinstance(deser, type) and issubclass(deser, BaseModel):
                if top_level_list:
                    return [deser.model_validate(o) for o in loads(js)]
                return deser.model_validate_json(js)
            return loads(js, object_hook=deser)
        except ValidationError as e:
            logger().error(
                f"in {response.method} {response.url}: {e.errors()}"
            )
            raise QueryExecutionError(f"Unable to parse response: {e}") from e
        except JSONDecodeError as e:
            logger().error(f"in {response.method} {response.url}: unable to parse body: {e}")
            raise QueryExecutionError(f"Unable to parse response: {e}") from e

    async def handle_response(
        self,
        response: ClientResponse,
        deser: Optional[DeserializationStrategy],
        top_level_list: bool = False,
    ):
        if self.response_hook is not None:
            self.response_hook(response)
        await self.raise_for_status(response)
        return await self.deserialize(response, deser, top_level_list=top_level_list)

    def log_request(
        self, method: str, endpoint: str, params: Optional[Dict[AnyStr, Any]] = None
    ):
        if logger().isEnabledFor(logging.DEBUG):
            sanitized_headers = {
                k: (v if k != "Authorization" else "Bearer <redacted>")
                for k, v in self.headers.items()
            }
            logger().debug(
                f"{method} {self.uri}{endpoint}', headers={sanitized_headers}, params={params}"
            )

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.uri}{endpoint}"

    async def get(
        self,
        endpoint: AnyStr,
        params: Dict[AnyStr, AnyStr] = None,
        deser: Optional[DeserializationStrategy] = None,
        top_level_list: bool = False,
    ):
        self.log_request("GET", endpoint, params)
        try:
            async with ClientSession(timeout=self.timeout) as session:
                async with session.get(
                    self._url(endpoint), headers=self.headers, params=params
                ) as response:
                    return await self.handle_response(
                        response, deser, top_level_list=top_level_list
                    )
        except (ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"GET {self._url(endpoint)} failed: {e!r}") from e

    async def post(
        self,
        endpoint: AnyStr,
        body: Optional[Any] = None,
        deser: Optional[DeserializationStrategy] = None,
        top_level_list: bool = False,
    ):
        self.log_request("POST", endpoint)
        try:
            async with ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    self._url(endpoint), headers=self.headers, json=body
                ) as response:
                    return await self.handle_response(
                        response, deser, top_level_list=top_level_list
                    )
        except (ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"POST {self._url(endpoint)} failed: {e!r}") from e
