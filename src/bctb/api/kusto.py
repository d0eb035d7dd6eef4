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
Query engine for the Application Insights (Kusto) query API.

Queries are checked against a deny list of management commands before they
leave the process, executed with a single POST, and the first table of the
response is flattened into columns and rows.
"""
import re
from http import HTTPStatus
from typing import Any, List, Optional

from aiohttp import ClientResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from bctb.api.auth import APP_INSIGHTS_RESOURCE, AuthToken
from bctb.api.transport import AsyncHttpClient, DEFAULT_TIMEOUT_SECONDS, error_message
from bctb.errors import (
    AuthenticationError,
    InvalidQueryError,
    QueryExecutionError,
    RateLimitError,
)
from bctb.log import logger

# management commands that mutate state; the engine is used read-only
DENIED_COMMANDS = (
    ".drop",
    ".delete",
    ".clear",
    ".set-or-replace",
    ".set-or-append",
    ".append",
    ".alter",
    ".alter-merge",
    ".create",
    ".create-or-alter",
    ".rename",
    ".purge",
    ".ingest",
    ".move",
    ".replace",
    ".set",
)
_DENIED = re.compile(
    r"(?<![\w.])("
    + "|".join(re.escape(c) for c in DENIED_COMMANDS)
    + r")(?![\w-])",
    re.IGNORECASE,
)
EMPTY_QUERY = "Query cannot be empty"
LARGE_RESULT_ROWS = 10000


def validate_query(kql: Optional[str]) -> List[str]:
    """Return every violation found in ``kql``; an empty list means it may run"""
    if not kql or not kql.strip():
        return [EMPTY_QUERY]

    found = []
    for m in _DENIED.finditer(kql):
        command = m.group(1).lower()
        if command not in found:
            found.append(command)
    return [f"Query contains potentially dangerous operation: {c}" for c in found]


class Column(BaseModel):
    name: str = Field(validation_alias=AliasChoices("name", "columnName"))
    type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("type", "dataType", "columnType")
    )


class Table(BaseModel):
    name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("name", "tableName")
    )
    columns: List[Column] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)


class QueryResponse(BaseModel):
    tables: List[Table] = Field(default_factory=list)
    model_config = ConfigDict(extra="ignore")


class TabularResult(BaseModel):
    columns: List[str]
    rows: List[List[Any]]
    summary: str = ""


def parse_result(result: QueryResponse) -> TabularResult:
    if not result.tables:
        return TabularResult(columns=[], rows=[], summary="No results returned")

    primary = result.tables[0]
    columns = [c.name for c in primary.columns]
    return TabularResult(
        columns=columns,
        rows=primary.rows,
        summary=f"Returned {len(primary.rows)} row(s) with {len(columns)} column(s)",
    )


def recommendations(kql: str, result: Optional[TabularResult] = None) -> List[str]:
    recs = []
    if "where" in kql and "| where" not in kql:
        recs.append(
            'Consider using the pipe operator before "where" for better performance'
        )
    if "*" in kql:
        recs.append("Specify explicit columns instead of * for better performance")
    if "ago(" not in kql.lower():
        recs.append(
            "Consider adding a time range filter (e.g., | where timestamp > ago(1d))"
        )
    if result is not None and len(result.rows) > LARGE_RESULT_ROWS:
        recs.append('Large result set. Consider adding "| take 100" or similar limit')
    return recs


class KustoHttpClient(AsyncHttpClient):
    async def raise_for_status(self, response: ClientResponse):
        if response.status < 400:
            return
        message = await error_message(response)
        match response.status:
            case HTTPStatus.UNAUTHORIZED | HTTPStatus.FORBIDDEN:
                raise AuthenticationError(
                    f"Authentication failed: {message}. "
                    "Check your credentials and permissions."
                )
            case HTTPStatus.BAD_REQUEST:
                raise InvalidQueryError(f"Invalid query: {message}")
            case HTTPStatus.TOO_MANY_REQUESTS:
                raise RateLimitError(
                    f"Rate limit exceeded: {message}. Please try again later."
                )
        raise QueryExecutionError(
            f"Query execution failed: {message}", status=response.status
        )


class KustoClient:
    def __init__(
        self,
        app_id: str,
        api_uri: str = APP_INSIGHTS_RESOURCE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.app_id = app_id
        self.api_uri = api_uri.rstrip("/")
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"/v1/apps/{self.app_id}/query"

    async def execute(self, kql: str, token: AuthToken) -> TabularResult:
        if violations := validate_query(kql):
            raise InvalidQueryError(
                f"Query validation failed: {'; '.join(violations)}",
                violations=violations,
            )

        client = KustoHttpClient(self.api_uri, token.value, timeout=self.timeout)
        logger("kusto").info(
            "Executing query", app_id=self.app_id, query_length=len(kql)
        )
        response = await client.post(
            self.endpoint, body={"query": kql}, deser=QueryResponse
        )
        result = parse_result(response)
        logger("kusto").info("Query executed", summary=result.summary)
        return result
