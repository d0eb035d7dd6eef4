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
Global pytest fixtures for bctb tests.
"""
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from bctb.api.auth import AuthToken, CredentialState
from bctb.api.kusto import KustoClient
from bctb.config import settings
from bctb.config.settings import AuthFlow
from bctb.tools import tools


@pytest.fixture(autouse=True)
def clean_bctb_env(monkeypatch):
    """Tests never see BCTB_* variables of the developer running them"""
    for k in list(os.environ):
        if k.startswith("BCTB_"):
            monkeypatch.delenv(k)
    yield


@pytest.fixture(autouse=True)
def reset_context():
    old_settings = settings._settings.get()
    old_services = tools._services.get()
    yield
    settings._settings.set(old_settings)
    tools._services.set(old_services)


@pytest.fixture
def temp_config_dir(tmp_path):
    """Create a temporary directory for config files"""
    d = tmp_path / "config"
    d.mkdir()
    return d


@pytest.fixture
def mock_config_dir(temp_config_dir, monkeypatch):
    """Mock the home directory to use our temporary directory"""
    with patch.object(Path, "home", return_value=temp_config_dir):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_config_dir))
        monkeypatch.setenv("XDG_STATE_HOME", str(temp_config_dir / "state"))
        yield temp_config_dir


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A workspace folder that is also the current directory"""
    ws = tmp_path / "workspace"
    ws.mkdir()
    monkeypatch.chdir(ws)
    monkeypatch.setenv("BCTB_WORKSPACE_PATH", str(ws))
    return ws


@pytest.fixture
def make_profile(workspace):
    def _make(**overrides) -> settings.Profile:
        data = {
            "connectionName": "Test",
            "authFlow": AuthFlow.client_credentials.value,
            "tenantId": "tenant",
            "clientId": "client",
            "clientSecret": "secret",
            "applicationInsightsAppId": "app-id",
            "kustoClusterUrl": "https://ade.applicationinsights.io",
            "workspacePath": str(workspace),
        }
        data.update(overrides)
        return settings.Profile.model_validate(data)

    return _make


class FakeCredentials:
    """Stands in for CredentialManager, hands out a fixed token"""

    def __init__(self, value: str = "test-token"):
        self.value = value
        self.calls = 0
        self.invalidated = 0
        self.flow = AuthFlow.client_credentials

    async def get_token(self) -> AuthToken:
        self.calls += 1
        return AuthToken(
            value=self.value,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            flow=self.flow,
            user="tester",
        )

    def invalidate(self):
        self.invalidated += 1

    def status(self) -> Dict[str, Any]:
        return {
            "authenticated": True,
            "flow": self.flow.value,
            "state": CredentialState.AUTHENTICATED.value,
            "user": "tester",
            "expiresOn": None,
            "lastError": None,
        }


@pytest.fixture
def fake_credentials():
    return FakeCredentials()


@dataclass
class FakeAppInsights:
    """Answers /v1/apps/{id}/query with a programmable response"""

    url: str = ""
    status: int = 200
    body: Dict[str, Any] = field(
        default_factory=lambda: {
            "tables": [
                {
                    "name": "PrimaryResult",
                    "columns": [
                        {"name": "timestamp", "type": "datetime"},
                        {"name": "message", "type": "string"},
                    ],
                    "rows": [
                        ["2025-01-01T00:00:00Z", "hello"],
                        ["2025-01-01T00:01:00Z", "contact admin@contoso.com"],
                    ],
                }
            ]
        }
    )
    requests: List[Dict[str, Any]] = field(default_factory=list)

    def respond(self, status: int, body: Optional[Dict[str, Any]] = None):
        self.status = status
        self.body = body if body is not None else {}

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(
            {
                "path": request.path,
                "app_id": request.match_info["app_id"],
                "authorization": request.headers.get("Authorization"),
                "body": await request.json(),
            }
        )
        return web.json_response(self.body, status=self.status)


@pytest_asyncio.fixture
async def app_insights():
    fake = FakeAppInsights()
    app = web.Application()
    app.router.add_post("/v1/apps/{app_id}/query", fake.handle)
    server = TestServer(app)
    await server.start_server()
    fake.url = str(server.make_url("")).rstrip("/")
    try:
        yield fake
    finally:
        await server.close()


@pytest_asyncio.fixture
async def services(make_profile, fake_credentials, app_insights):
    profile = make_profile()
    svc = tools.Services(
        profile,
        credentials=fake_credentials,
        kusto=KustoClient(profile.application_insights_app_id, api_uri=app_insights.url),
    )
    return svc
