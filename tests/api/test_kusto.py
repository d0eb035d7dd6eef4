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

from datetime import datetime, timedelta, timezone

import pytest

from bctb.api.auth import AuthToken
from bctb.api.kusto import (
    KustoClient,
    QueryResponse,
    parse_result,
    recommendations,
    validate_query,
)
from bctb.config.settings import AuthFlow
from bctb.errors import (
    AuthenticationError,
    InvalidQueryError,
    NetworkError,
    QueryExecutionError,
    RateLimitError,
)


@pytest.fixture
def token():
    return AuthToken(
        value="bearer-value",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        flow=AuthFlow.client_credentials,
    )


class TestValidateQuery:
    @pytest.mark.parametrize("kql", ["", "   ", "\n\t", None])
    def test_empty(self, kql):
        assert validate_query(kql) == ["Query cannot be empty"]

    @pytest.mark.parametrize(
        "kql,command",
        [
            (".drop table X", ".drop"),
            (".DELETE table T records", ".delete"),
            ("traces | take 1\n.set-or-replace T <| traces", ".set-or-replace"),
            (".alter-merge table T policy retention", ".alter-merge"),
            (".Purge table T records <| where true", ".purge"),
            (".create-or-alter function f() { 1 }", ".create-or-alter"),
            (".set T <| print 1", ".set"),
        ],
    )
    def test_denied_commands(self, kql, command):
        assert f"Query contains potentially dangerous operation: {command}" in validate_query(
            kql
        )

    def test_reports_every_command_once(self):
        assert validate_query(".drop table A; .drop table B; .clear table C data") == [
            "Query contains potentially dangerous operation: .drop",
            "Query contains potentially dangerous operation: .clear",
        ]

    @pytest.mark.parametrize(
        "kql",
        [
            "traces | take 10",
            "traces | where message has 'dropdown' | summarize count() by bin(timestamp, 1h)",
            "customEvents | extend x = customDimensions.setting",
        ],
    )
    def test_read_only_queries_pass(self, kql):
        assert validate_query(kql) == []


class TestParseResult:
    def test_first_table_is_flattened(self):
        response = QueryResponse.model_validate(
            {
                "tables": [
                    {
                        "name": "PrimaryResult",
                        "columns": [
                            {"name": "a", "type": "long"},
                            {"columnName": "b", "dataType": "String"},
                        ],
                        "rows": [[1, "x"], [2, None]],
                    },
                    {"name": "Extra", "columns": [{"name": "c"}], "rows": [[3]]},
                ]
            }
        )
        result = parse_result(response)
        assert result.columns == ["a", "b"]
        assert result.rows == [[1, "x"], [2, None]]
        assert result.summary == "Returned 2 row(s) with 2 column(s)"

    @pytest.mark.parametrize("body", [{}, {"tables": []}])
    def test_no_tables(self, body):
        result = parse_result(QueryResponse.model_validate(body))
        assert (result.columns, result.rows) == ([], [])
        assert result.summary == "No results returned"


class TestRecommendations:
    def test_well_formed_query(self):
        assert recommendations("traces | where timestamp > ago(1d) | take 10") == []

    def test_heuristics(self):
        recs = recommendations("traces where x == 1 | project *")
        assert len(recs) == 3
        assert any("time range filter" in r for r in recs)
        assert any("explicit columns" in r for r in recs)


class TestKustoClient:
    @pytest.mark.asyncio
    async def test_execute(self, app_insights, token):
        client = KustoClient("my-app", api_uri=app_insights.url)
        result = await client.execute("traces | take 10", token)

        assert result.columns == ["timestamp", "message"]
        assert result.summary == "Returned 2 row(s) with 2 column(s)"
        (request,) = app_insights.requests
        assert request["app_id"] == "my-app"
        assert request["authorization"] == "Bearer bearer-value"
        assert request["body"] == {"query": "traces | take 10"}

    @pytest.mark.asyncio
    async def test_denied_query_never_leaves_the_process(self, app_insights, token):
        client = KustoClient("my-app", api_uri=app_insights.url)
        with pytest.raises(InvalidQueryError) as e:
            await client.execute(".drop table X", token)
        assert e.value.violations == [
            "Query contains potentially dangerous operation: .drop"
        ]
        assert app_insights.requests == []

    @pytest.mark.asyncio
    async def test_rate_limit(self, app_insights, token):
        app_insights.respond(429, {"error": {"message": "Too many requests"}})
        client = KustoClient("my-app", api_uri=app_insights.url)
        with pytest.raises(RateLimitError) as e:
            await client.execute("traces | take 10", token)
        assert e.value.message == "Rate limit exceeded: Too many requests. Please try again later."
        assert len(app_insights.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure(self, app_insights, token, status):
        app_insights.respond(status, {"error": {"message": "Token expired"}})
        client = KustoClient("my-app", api_uri=app_insights.url)
        with pytest.raises(AuthenticationError) as e:
            await client.execute("traces | take 10", token)
        assert e.value.message == (
            "Authentication failed: Token expired. Check your credentials and permissions."
        )

    @pytest.mark.asyncio
    async def test_bad_request_is_echoed(self, app_insights, token):
        app_insights.respond(
            400,
            {
                "error": {
                    "message": "Failed to resolve table or column expression named 'tracez'",
                    "code": "BadArgumentError",
                }
            },
        )
        client = KustoClient("my-app", api_uri=app_insights.url)
        with pytest.raises(InvalidQueryError) as e:
            await client.execute("tracez | take 1", token)
        assert e.value.message == (
            "Invalid query: Failed to resolve table or column expression named 'tracez'"
        )

    @pytest.mark.asyncio
    async def test_other_status(self, app_insights, token):
        app_insights.respond(503, {"error": {"message": "Service unavailable"}})
        client = KustoClient("my-app", api_uri=app_insights.url)
        with pytest.raises(QueryExecutionError) as e:
            await client.execute("traces | take 1", token)
        assert e.value.message == "Query execution failed: Service unavailable"
        assert e.value.status == 503

    @pytest.mark.asyncio
    async def test_unreachable_engine(self, token, unused_tcp_port):
        client = KustoClient("my-app", api_uri=f"http://127.0.0.1:{unused_tcp_port}")
        with pytest.raises(NetworkError):
            await client.execute("traces | take 1", token)
