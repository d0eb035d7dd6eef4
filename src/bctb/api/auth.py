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
Credential management for the Application Insights query API.

One state machine serves all three flows; the flow specific part is a
tagged union of grants (``DeviceCodeGrant``, ``ClientCredentialsGrant``,
``AzureCliGrant``) dispatched with ``match``. Tokens live in memory only.
"""
import asyncio
import json
import time
from asyncio.subprocess import PIPE
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum, auto
from shutil import which
from typing import Any, Callable, Dict, Optional, Union

import msal
import requests
from pydantic import BaseModel, ConfigDict, Field

from bctb import log
from bctb.config.settings import AuthFlow, Profile
from bctb.errors import AuthenticationError, NetworkError

APP_INSIGHTS_RESOURCE = "https://api.applicationinsights.io"
SCOPES = [f"{APP_INSIGHTS_RESOURCE}/.default"]
AUTHORITY = "https://login.microsoftonline.com/{tenant}"
# well known public client id of the Azure CLI, used for device code when the
# profile does not bring its own app registration
AZURE_CLI_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"

SAFETY_MARGIN = timedelta(minutes=5)
IDP_TIMEOUT_SECONDS = 30.0
DEVICE_CODE_TIMEOUT_SECONDS = 300.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthToken(BaseModel):
    value: str = Field(repr=False)
    expires_at: datetime
    flow: AuthFlow
    user: Optional[str] = None
    model_config = ConfigDict(frozen=True)

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        return self.expires_at - margin <= (now or _utcnow())

    @property
    def has_expired(self) -> bool:
        return self.expires_within(timedelta(0))


@dataclass(frozen=True)
class DeviceCodeGrant:
    tenant_id: str
    client_id: str = AZURE_CLI_CLIENT_ID


@dataclass(frozen=True)
class ClientCredentialsGrant:
    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)


@dataclass(frozen=True)
class AzureCliGrant:
    resource: str = APP_INSIGHTS_RESOURCE


Grant = Union[DeviceCodeGrant, ClientCredentialsGrant, AzureCliGrant]


def grant_for(profile: Profile) -> Grant:
    match profile.auth_flow:
        case AuthFlow.device_code:
            return DeviceCodeGrant(
                tenant_id=profile.tenant_id,
                client_id=profile.client_id or AZURE_CLI_CLIENT_ID,
            )
        case AuthFlow.client_credentials:
            return ClientCredentialsGrant(
                tenant_id=profile.tenant_id,
                client_id=profile.client_id or "",
                client_secret=profile.client_secret or "",
            )
        case AuthFlow.azure_cli:
            return AzureCliGrant()
    raise AuthenticationError(f"Unsupported auth flow: {profile.auth_flow}")


def flow_of(grant: Grant) -> AuthFlow:
    match grant:
        case DeviceCodeGrant():
            return AuthFlow.device_code
        case ClientCredentialsGrant():
            return AuthFlow.client_credentials
        case AzureCliGrant():
            return AuthFlow.azure_cli


@dataclass(frozen=True)
class DeviceCodePrompt:
    user_code: str
    verification_uri: str
    message: str
    expires_in: int


DeviceCodeCallback = Callable[[DeviceCodePrompt], None]


def log_device_code(prompt: DeviceCodePrompt):
    # the prompt has to reach a human before the request completes, so it
    # goes to the diagnostic stream rather than the RPC result
    log.logger("auth").warning(
        "Device code sign-in required",
        message=prompt.message,
        user_code=prompt.user_code,
        verification_uri=prompt.verification_uri,
    )


class CredentialState(StrEnum):
    UNAUTHENTICATED = auto()
    ACQUIRING = auto()
    AUTHENTICATED = auto()
    REFRESHING = auto()
    FAILED = auto()


class CredentialManager:
    def __init__(
        self,
        grant: Grant,
        on_device_code: Optional[DeviceCodeCallback] = None,
        safety_margin: timedelta = SAFETY_MARGIN,
        device_code_timeout: float = DEVICE_CODE_TIMEOUT_SECONDS,
        timeout: float = IDP_TIMEOUT_SECONDS,
    ):
        self.grant = grant
        self.on_device_code = on_device_code or log_device_code
        self.safety_margin = safety_margin
        self.device_code_timeout = device_code_timeout
        self.timeout = timeout
        self._token: Optional[AuthToken] = None
        self._state = CredentialState.UNAUTHENTICATED
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._last_error: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: Profile, **kw) -> "CredentialManager":
        return cls(grant_for(profile), **kw)

    @property
    def flow(self) -> AuthFlow:
        return flow_of(self.grant)

    @property
    def state(self) -> CredentialState:
        return self._state

    def status(self) -> Dict[str, Any]:
        token = self._token
        authenticated = token is not None and not token.has_expired
        return {
            "authenticated": authenticated,
            "flow": self.flow.value,
            "state": self._state.value,
            "user": token.user if authenticated else None,
            "expiresOn": token.expires_at.isoformat() if authenticated else None,
            "lastError": self._last_error,
        }

    def invalidate(self):
        """Drop the cached token, e.g. after the query API answered 401"""
        if self._token is not None:
            log.logger("auth").info("Invalidating cached token", flow=self.flow.value)
        self._token = None
        self._state = CredentialState.UNAUTHENTICATED

    def _usable_token(self) -> Optional[AuthToken]:
        token = self._token
        if token is not None and not token.expires_within(self.safety_margin):
            return token
        return None

    async def get_token(self) -> AuthToken:
        """
        Return a token with more than ``safety_margin`` lifetime left.

        Concurrent callers share one acquisition: the first caller starts it,
        everybody awaits the same task, so a device code prompt is shown once.
        """
        if (token := self._usable_token()) is not None:
            return token

        async with self._lock:
            if (token := self._usable_token()) is not None:
                return token
            if self._inflight is None:
                self._state = (
                    CredentialState.REFRESHING
                    if self._token is not None
                    else CredentialState.ACQUIRING
                )
                self._inflight = asyncio.create_task(self._acquire_and_store())
            inflight = self._inflight

        return await asyncio.shield(inflight)

    async def _acquire_and_store(self) -> AuthToken:
        try:
            token = await self._acquire()
        except Exception as e:
            self._token = None
            self._state = CredentialState.FAILED
            self._last_error = str(e)
            log.logger("auth").error(
                "Authentication failed", flow=self.flow.value, error=str(e)
            )
            raise
        else:
            self._token = token
            self._state = CredentialState.AUTHENTICATED
            self._last_error = None
            log.logger("auth").info(
                "Authenticated",
                flow=self.flow.value,
                user=token.user,
                expires_at=token.expires_at.isoformat(),
            )
            return token
        finally:
            self._inflight = None

    async def _acquire(self) -> AuthToken:
        match self.grant:
            case DeviceCodeGrant() as grant:
                return await self._device_code(grant)
            case ClientCredentialsGrant() as grant:
                return await self._client_credentials(grant)
            case AzureCliGrant() as grant:
                return await self._azure_cli(grant)

    async def _in_thread(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Identity provider unreachable: {e}") from e
        except ValueError as e:
            # msal raises ValueError for unknown tenants / authority issues
            raise AuthenticationError(str(e), self.flow.value) from e

    def _token_from_result(self, result: Dict[str, Any], user: Optional[str] = None) -> AuthToken:
        if not result or "access_token" not in result:
            reason = (result or {}).get("error_description") or (result or {}).get(
                "error", "no token returned"
            )
            raise AuthenticationError(
                f"{self.flow.value} authentication failed: {reason}", self.flow.value
            )
        claims = result.get("id_token_claims") or {}
        return AuthToken(
            value=result["access_token"],
            expires_at=_utcnow() + timedelta(seconds=int(result.get("expires_in", 3600))),
            flow=self.flow,
            user=claims.get("preferred_username") or user,
        )

    async def _device_code(self, grant: DeviceCodeGrant) -> AuthToken:
        if not grant.tenant_id:
            raise AuthenticationError(
                "device_code flow requires a tenantId", self.flow.value
            )

        def _initiate():
            app = msal.PublicClientApplication(
                grant.client_id,
                authority=AUTHORITY.format(tenant=grant.tenant_id),
                timeout=self.timeout,
            )
            return app, app.initiate_device_flow(scopes=SCOPES)

        app, flow = await self._in_thread(_initiate)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Unable to start device code flow: "
                f"{flow.get('error_description') or flow.get('error')}",
                self.flow.value,
            )
        # bound the polling window, msal stops polling once expires_at passes
        flow["expires_at"] = min(
            flow.get("expires_at", float("inf")), time.time() + self.device_code_timeout
        )
        self.on_device_code(
            DeviceCodePrompt(
                user_code=flow["user_code"],
                verification_uri=flow.get("verification_uri", ""),
                message=flow.get("message", ""),
                expires_in=int(flow.get("expires_in", self.device_code_timeout)),
            )
        )
        result = await self._in_thread(app.acquire_token_by_device_flow, flow)
        return self._token_from_result(result)

    async def _client_credentials(self, grant: ClientCredentialsGrant) -> AuthToken:
        if not (grant.tenant_id and grant.client_id and grant.client_secret):
            raise AuthenticationError(
                "Client credentials flow requires tenantId, clientId and clientSecret",
                self.flow.value,
            )

        def _acquire():
            app = msal.ConfidentialClientApplication(
                grant.client_id,
                authority=AUTHORITY.format(tenant=grant.tenant_id),
                client_credential=grant.client_secret,
                timeout=self.timeout,
            )
            return app.acquire_token_for_client(scopes=SCOPES)

        result = await self._in_thread(_acquire)
        return self._token_from_result(result, user=f"ServicePrincipal:{grant.client_id}")

    async def _azure_cli(self, grant: AzureCliGrant) -> AuthToken:
        if (az := which("az")) is None:
            raise AuthenticationError(
                "Azure CLI is not installed or not in PATH. Install it from "
                "https://docs.microsoft.com/cli/azure/install-azure-cli",
                self.flow.value,
            )

        proc = await asyncio.create_subprocess_exec(
            az, "account", "get-access-token",
            "--resource", grant.resource,
            "--output", "json",
            stdout=PIPE,
            stderr=PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            raise NetworkError(
                f"Azure CLI did not return a token within {self.timeout:.0f}s"
            ) from e

        if proc.returncode != 0:
            message = err.decode(errors="replace").strip()
            if "az login" in message:
                message = "You need to login first. Run 'az login' and try again."
            raise AuthenticationError(
                f"Azure CLI authentication failed: {message}", self.flow.value
            )

        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise AuthenticationError(
                f"Unexpected Azure CLI output: {e}", self.flow.value
            ) from e
        if not data.get("accessToken"):
            raise AuthenticationError(
                "No access token returned from Azure CLI", self.flow.value
            )

        return AuthToken(
            value=data["accessToken"],
            expires_at=_cli_expiry(data),
            flow=self.flow,
            user=data.get("subscription") or "Azure CLI User",
        )


def _cli_expiry(data: Dict[str, Any]) -> datetime:
    # newer az versions return a posix timestamp, older ones a local time string
    if (ts := data.get("expires_on")) is not None:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    if expires_on := data.get("expiresOn"):
        return datetime.fromisoformat(expires_on).astimezone(timezone.utc)
    return _utcnow() + timedelta(hours=1)
