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
Best effort retrieval of example ``.kql`` files from public GitHub
repositories listed as references in the profile.
"""
import asyncio
import re
import time
from typing import Any, Dict, List, Optional

from aiohttp import ClientResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from bctb.api.transport import AsyncHttpClient
from bctb.config.settings import Reference, ReferenceType
from bctb.errors import TelemetryError
from bctb.log import logger
from bctb.storage.cache import FileCache

GITHUB_API = "https://api.github.com"
GITHUB_TIMEOUT_SECONDS = 30.0
REFERENCE_TTL_SECONDS = 3600
# unauthenticated GitHub API budget per hour
DEFAULT_RATE_LIMIT = 60
LOW_RATE_LIMIT = 10

_GITHUB_URL = re.compile(r"github\.com/([^/]+)/([^/]+?)(?:\.git)?(?:/tree/[^/]+/(.+?))?/?$")


class ExternalQuery(BaseModel):
    source: str
    file_name: str
    content: str
    url: str
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContentItem(BaseModel):
    name: str
    path: str
    type: str
    download_url: Optional[str] = None
    html_url: Optional[str] = None
    model_config = ConfigDict(extra="ignore")


def parse_github_url(url: str) -> Optional[Dict[str, str]]:
    if (m := _GITHUB_URL.search(url)) is None:
        return None
    return {"owner": m.group(1), "repo": m.group(2), "path": m.group(3) or ""}


class ReferencesService:
    """
    Rate limit bookkeeping is per instance; nothing here raises, failures are
    logged and produce fewer (or no) queries.
    """

    def __init__(
        self,
        references: List[Reference],
        cache: FileCache,
        api_uri: str = GITHUB_API,
        timeout: float = GITHUB_TIMEOUT_SECONDS,
    ):
        self.references = [r for r in references if r.enabled]
        self.cache = cache
        self.rate_limit_remaining: int = DEFAULT_RATE_LIMIT
        self.rate_limit_reset: Optional[float] = None
        self.client = AsyncHttpClient(
            api_uri,
            timeout=timeout,
            headers={
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "bctb-mcp-server",
            },
            response_hook=self.update_rate_limit,
        )

    def update_rate_limit(self, response: ClientResponse):
        headers = response.headers
        try:
            if (remaining := headers.get("x-ratelimit-remaining")) is not None:
                self.rate_limit_remaining = int(remaining)
            if (reset := headers.get("x-ratelimit-reset")) is not None:
                self.rate_limit_reset = float(reset)
        except ValueError:
            logger("references").warning(
                "Ignoring malformed GitHub rate limit headers",
                remaining=headers.get("x-ratelimit-remaining"),
                reset=headers.get("x-ratelimit-reset"),
            )
            return
        if self.rate_limit_remaining < LOW_RATE_LIMIT:
            logger("references").warning(
                "GitHub rate limit low", remaining=self.rate_limit_remaining
            )

    def rate_limited(self) -> bool:
        if self.rate_limit_remaining > 0:
            return False
        if self.rate_limit_reset is not None and self.rate_limit_reset > time.time():
            return True
        self.rate_limit_remaining = DEFAULT_RATE_LIMIT
        self.rate_limit_reset = None
        return False

    async def get_all(self) -> List[ExternalQuery]:
        queries = []
        for reference in self.references:
            if reference.type == ReferenceType.github:
                queries.extend(await self.fetch_github(reference))
        logger("references").info(
            "Fetched external queries",
            count=len(queries),
            references=len(self.references),
        )
        return queries

    async def fetch_github(self, reference: Reference) -> List[ExternalQuery]:
        if self.rate_limited():
            logger("references").warning(
                "GitHub rate limit exceeded, skipping", reference=reference.name
            )
            return []

        key = f"github:{reference.url}"
        if (cached := await asyncio.to_thread(self.cache.get, key)) is not None:
            try:
                return [ExternalQuery.model_validate(q) for q in cached]
            except (TypeError, ValidationError):
                await asyncio.to_thread(self.cache.delete, key)

        if (repo := parse_github_url(reference.url)) is None:
            logger("references").error("Invalid GitHub URL", url=reference.url)
            return []

        queries = await self._walk(
            repo["owner"], repo["repo"], repo["path"], reference.name
        )
        if queries:
            await asyncio.to_thread(
                self.cache.set,
                key,
                [q.model_dump(by_alias=True) for q in queries],
                REFERENCE_TTL_SECONDS,
            )
        return queries

    async def _walk(
        self, owner: str, repo: str, path: str, source: str
    ) -> List[ExternalQuery]:
        endpoint = f"/repos/{owner}/{repo}/contents/{path}".rstrip("/")
        try:
            items: Any = await self.client.get(endpoint)
        except TelemetryError as e:
            logger("references").error(
                "Failed to list repository contents",
                repo=f"{owner}/{repo}",
                path=path,
                error=e.message,
            )
            return []
        try:
            contents = [ContentItem.model_validate(i) for i in items]
        except (TypeError, ValidationError) as e:
            logger("references").error(
                "Unexpected repository listing", repo=f"{owner}/{repo}", error=str(e)
            )
            return []

        queries = []
        for item in contents:
            if item.type == "file" and item.name.endswith(".kql") and item.download_url:
                if (q := await self._file(item, source)) is not None:
                    queries.append(q)
            elif item.type == "dir":
                queries.extend(await self._walk(owner, repo, item.path, source))
        return queries

    async def _file(self, item: ContentItem, source: str) -> Optional[ExternalQuery]:
        try:
            content = await self.client.get(item.download_url, deser=str)
        except TelemetryError as e:
            logger("references").error(
                "Failed to fetch file", file=item.name, error=e.message
            )
            return None
        return ExternalQuery(
            source=source,
            file_name=item.name,
            content=content,
            url=item.html_url or item.download_url,
        )
