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
from contextlib import asynccontextmanager
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from bctb.log import logger
from bctb.servers.jsonrpc import Dispatcher
from bctb.storage.cache import CacheSweeper


def create_app(
    dispatcher: Dispatcher, sweeper: Optional[CacheSweeper] = None
) -> Starlette:
    """
    ``POST /rpc`` takes one JSON-RPC request and answers with HTTP 200 even
    for JSON-RPC errors (204 for notifications). ``GET /health`` is the
    liveness check.
    """

    async def rpc(request: Request) -> Response:
        body = await request.body()
        response = await dispatcher.handle_line(body)
        if response is None:
            return Response(status_code=204)
        return JSONResponse(response)

    async def health(_request: Request) -> Response:
        return JSONResponse({"status": "ok"})

    @asynccontextmanager
    async def lifespan(_app: Starlette):
        if sweeper is not None:
            sweeper.start()
        logger("http").info("HTTP transport ready")
        try:
            yield
        finally:
            if sweeper is not None:
                await sweeper.stop()

    return Starlette(
        routes=[
            Route("/rpc", rpc, methods=["POST"]),
            Route("/health", health, methods=["GET"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "OPTIONS"],
                allow_headers=["*"],
            )
        ],
        lifespan=lifespan,
    )
