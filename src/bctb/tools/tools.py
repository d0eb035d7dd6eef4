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
import re
from contextvars import ContextVar
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Type, Union

from pydantic import Field

from bctb import log
from bctb.api.auth import CredentialManager
from bctb.api.kusto import KustoClient, TabularResult, recommendations, validate_query
from bctb.api.references import ReferencesService
from bctb.config import settings
from bctb.config.tools import ToolType, all_tool_types
from bctb.errors import AuthenticationError, ConfigurationError, InvalidQueryError
from bctb.sanitize import sanitize_object
from bctb.storage.cache import CacheSweeper, FileCache, query_cache_key
from bctb.storage.queries import QueryLibrary


class Services:
    """Everything a tool needs, built once from the active profile"""

    def __init__(
        self,
        profile: settings.Profile,
        credentials: Optional[CredentialManager] = None,
        kusto: Optional[KustoClient] = None,
        cache: Optional[FileCache] = None,
        queries: Optional[QueryLibrary] = None,
        references: Optional[ReferencesService] = None,
    ):
        self.profile = profile
        self.problems = settings.validate(profile)
        self.credentials = (
            credentials
            if credentials is not None
            else CredentialManager.from_profile(profile)
        )
        self.kusto = (
            kusto
            if kusto is not None
            else KustoClient(profile.application_insights_app_id)
        )
        self.cache = (
            cache
            if cache is not None
            else FileCache(
                profile.cache_dir,
                default_ttl=profile.cache_ttl_seconds,
                enabled=profile.cache_enabled,
            )
        )
        self.queries = (
            queries if queries is not None else QueryLibrary(profile.queries_dir)
        )
        self.references = (
            references
            if references is not None
            else ReferencesService(profile.references, self.cache)
        )
        self.sweeper = CacheSweeper(
            self.cache, profile.cache_cleanup_interval_seconds
        )

    def require_complete(self):
        if self.problems:
            raise ConfigurationError(
                f"Configuration incomplete: {'; '.join(self.problems)}"
            )


_services: ContextVar[Optional[Services]] = ContextVar("services", default=None)


def configure(services: Services) -> Services:
    _services.set(services)
    return services


def instance() -> Services:
    if (s := _services.get()) is None:
        raise ConfigurationError("The server has not been configured with a profile")
    return s


class Tools:
    name: ClassVar[str]
    For: ClassVar[ToolType]

    def __init__(self, services: Optional[Services] = None):
        self._services = services

    @property
    def services(self) -> Services:
        return self._services if self._services is not None else instance()

    async def invoke(self, **kw) -> Any:
        raise NotImplementedError("Subclasses should implement this method")


# --------------------------------------------------------------------------------
# query


class QueryTelemetry(Tools):
    name = "query_telemetry"
    For = ToolType.FOR_QUERY

    async def invoke(
        self,
        kql: Annotated[
            str,
            Field(
                description="The KQL query to run against the telemetry, e.g. "
                "'traces | where timestamp > ago(1d) | take 10'"
            ),
        ],
    ) -> Dict[str, Any]:
        """Run a read-only KQL query against Business Central telemetry in Application Insights.

        Management commands (.drop, .set, .alter ...) are rejected before anything
        is sent. Identical queries within the cache TTL are answered from the local
        cache and carry cached=true.

        Returns:
            type, kql, summary, columns, rows, recommendations and cached.
        """
        if violations := validate_query(kql):
            raise InvalidQueryError(
                f"Query validation failed: {'; '.join(violations)}",
                violations=violations,
            )

        svc = self.services
        svc.require_complete()
        remove_pii = svc.profile.remove_pii
        key = query_cache_key(kql, remove_pii)
        if (cached := await asyncio.to_thread(svc.cache.get, key)) is not None:
            log.logger("query_telemetry").info("Serving query from cache")
            return {**cached, "cached": True}

        token = await svc.credentials.get_token()
        try:
            result = await svc.kusto.execute(kql, token)
        except AuthenticationError:
            svc.credentials.invalidate()
            raise

        payload = {
            "type": "table",
            "kql": kql,
            "summary": result.summary,
            "columns": result.columns,
            "rows": sanitize_object(result.rows, remove_pii),
            "recommendations": recommendations(kql, result),
        }
        await asyncio.to_thread(
            svc.cache.set, key, payload, svc.profile.cache_ttl_seconds
        )
        return {**payload, "cached": False}


class GetAuthStatus(Tools):
    name = "get_auth_status"
    For = ToolType.FOR_QUERY

    async def invoke(self) -> Dict[str, Any]:
        """Report the authentication state of the active profile without contacting the identity provider."""
        svc = self.services
        return {
            "connectionName": svc.profile.connection_name,
            **svc.credentials.status(),
            "configurationProblems": svc.problems,
        }


class GetRecommendations(Tools):
    name = "get_recommendations"
    For = ToolType.FOR_QUERY

    async def invoke(
        self,
        kql: Annotated[str, Field(description="The KQL query to review")],
        results: Annotated[
            Optional[TabularResult],
            Field(
                description="Optional result of the query (columns and rows) as "
                "returned by query_telemetry"
            ),
        ] = None,
    ) -> List[str]:
        """Suggest improvements for a KQL query without running it.

        Pass the result of a previous query_telemetry call to also get advice on
        the size of the result.
        """
        return recommendations(kql, results)


# --------------------------------------------------------------------------------
# saved queries


def _dump(queries) -> List[Dict[str, Any]]:
    return [q.model_dump(by_alias=True) for q in queries]


class GetSavedQueries(Tools):
    name = "get_saved_queries"
    For = ToolType.FOR_CONTEXT

    async def invoke(
        self,
        tag_filter: Annotated[
            Optional[str],
            Field(description="Only return queries carrying this tag"),
        ] = None,
    ) -> List[Dict[str, Any]]:
        """List the saved KQL queries of the workspace, optionally filtered by tag.

        Use these as examples of working queries before writing a new one.
        """
        svc = self.services
        return _dump(await asyncio.to_thread(svc.queries.list_queries, tag_filter))


class SearchQueries(Tools):
    name = "search_queries"
    For = ToolType.FOR_CONTEXT

    async def invoke(
        self,
        keywords: Annotated[
            Union[List[str], str],
            Field(
                description="Keywords to look for, as a list or a space/comma separated string"
            ),
        ],
    ) -> List[Dict[str, Any]]:
        """Search saved queries by keyword, best matches first.

        Matches in the query name and tags rank above matches in the purpose or the KQL.
        """
        if isinstance(keywords, str):
            keywords = re.split(r"[\s,]+", keywords)
        svc = self.services
        return _dump(await asyncio.to_thread(svc.queries.search, keywords))


class SaveQuery(Tools):
    name = "save_query"
    For = ToolType.FOR_CONTEXT

    async def invoke(
        self,
        name: Annotated[str, Field(description="Name of the query, also used as file name")],
        kql: Annotated[str, Field(description="The KQL text")],
        category: Annotated[
            Optional[str],
            Field(description="Folder below the queries folder, e.g. Performance"),
        ] = None,
        purpose: Annotated[str, Field(description="What the query finds")] = "",
        use_case: Annotated[str, Field(description="When to use the query")] = "",
        tags: Annotated[
            Optional[List[str]], Field(description="Tags used for filtering")
        ] = None,
    ) -> Dict[str, Any]:
        """Save a KQL query to the workspace queries folder so it can be reused as context."""
        svc = self.services
        path = await asyncio.to_thread(
            svc.queries.save,
            name,
            kql,
            category=category,
            purpose=purpose,
            use_case=use_case,
            tags=tags,
        )
        return {"filePath": str(path), "message": f"Query saved to {path}"}


class GetCategories(Tools):
    name = "get_categories"
    For = ToolType.FOR_CONTEXT

    async def invoke(self) -> List[str]:
        """List the categories (sub folders) of the saved queries"""
        return await asyncio.to_thread(self.services.queries.categories)


# --------------------------------------------------------------------------------
# cache


class GetCacheStats(Tools):
    name = "get_cache_stats"
    For = ToolType.FOR_CACHE

    async def invoke(self) -> Dict[str, Any]:
        """Report the number of cached query results, expired entries and size on disk."""
        return await asyncio.to_thread(self.services.cache.stats)


class ClearCache(Tools):
    name = "clear_cache"
    For = ToolType.FOR_CACHE

    async def invoke(self) -> Dict[str, Any]:
        """Remove every cached query result"""
        removed = await asyncio.to_thread(self.services.cache.clear)
        return {"removed": removed, "message": f"Cleared {removed} cache entries"}


class CleanupCache(Tools):
    name = "cleanup_cache"
    For = ToolType.FOR_CACHE

    async def invoke(self) -> Dict[str, Any]:
        """Remove only the expired cached query results"""
        removed = await asyncio.to_thread(self.services.cache.cleanup_expired)
        return {
            "removed": removed,
            "message": f"Removed {removed} expired cache entries",
        }


# --------------------------------------------------------------------------------
# external references


class GetExternalQueries(Tools):
    name = "get_external_queries"
    For = ToolType.FOR_REFERENCES

    async def invoke(self) -> List[Dict[str, Any]]:
        """Fetch example KQL queries from the GitHub repositories configured as references.

        Best effort: references that fail or are rate limited are skipped.
        """
        return _dump(await self.services.references.get_all())


_TOOLS: List[Type[Tools]] = [
    QueryTelemetry,
    GetAuthStatus,
    GetRecommendations,
    GetSavedQueries,
    SearchQueries,
    SaveQuery,
    GetCategories,
    GetCacheStats,
    ClearCache,
    CleanupCache,
    GetExternalQueries,
]


def get_tools(For: Optional[ToolType] = None) -> List[Type[Tools]]:
    if For is None:
        For = all_tool_types()
    return [t for t in _TOOLS if t.For & For]


def get_for(tool: Type[Tools]) -> ToolType:
    return tool.For


def system_prompt() -> str:
    return """
You help analyse Business Central telemetry stored in Application Insights.
Work in this order:
1. Call search_queries or get_saved_queries to find saved queries close to the
   question and reuse their table names, filters and projections.
2. Write a read-only KQL query. Always add a time filter such as
   `| where timestamp > ago(1d)` and limit the output with `take` or `summarize`.
3. Run it with query_telemetry. If it fails with an invalid query error, read
   the message, fix the KQL and try again. Do not retry on rate limit errors
   unless the user asks to.
4. When a query answers the question well, offer to store it with save_query.
Never attempt management commands (.drop, .set, .alter ...), they are rejected.
"""
