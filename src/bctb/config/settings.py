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
import json
import os
import re
from contextvars import ContextVar
from enum import StrEnum, auto
from functools import reduce
from importlib.util import find_spec
from operator import ior
from os import environ
from pathlib import Path
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Union

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
)
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError
from yaml import YAMLError, dump, safe_load

from bctb import log
from bctb.config.tools import ToolType, all_tool_types
from bctb.errors import ConfigurationError

CONFIG_FILE_NAME = ".bctb-config.json"
DEFAULT_PORT = 52345
DEFAULT_CACHE_TTL = 3600
_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")

RawProfile = Dict[str, Any]


def _resolve_tools_settings(server_mode: Union[ToolType, int, str]) -> ToolType:
    if isinstance(server_mode, str):
        try:
            server_mode = reduce(
                ior, [ToolType[m.strip().upper()] for m in server_mode.split(",")]
            )
        except KeyError:
            return _resolve_tools_settings(int(server_mode))

    if isinstance(server_mode, int):
        return ToolType(server_mode)

    return server_mode


class Tools(BaseModel):
    server_mode: Annotated[
        Optional[Union[ToolType, int, str]], AfterValidator(_resolve_tools_settings)
    ] = Field(default_factory=all_tool_types, alias="serverMode")
    model_config = ConfigDict(validate_assignment=True, populate_by_name=True)

    @field_serializer("server_mode")
    def serialize_server_mode(self, server_mode: ToolType):
        return ",".join(m.name for m in ToolType if m & server_mode)


class AuthFlow(StrEnum):
    device_code = auto()
    client_credentials = auto()
    azure_cli = auto()


class ReferenceType(StrEnum):
    github = auto()
    web = auto()


class Reference(BaseModel):
    name: str
    type: ReferenceType = ReferenceType.github
    url: str
    enabled: bool = True
    model_config = ConfigDict(frozen=True)


def _default_workspace() -> str:
    return environ.get("BCTB_WORKSPACE_PATH") or os.getcwd()


class Profile(BaseModel):
    """A fully resolved connection profile. Immutable once built."""

    connection_name: str = Field(default="Default", alias="connectionName")
    auth_flow: AuthFlow = Field(default=AuthFlow.azure_cli, alias="authFlow")
    tenant_id: str = Field(default="", alias="tenantId")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    client_secret: Optional[str] = Field(
        default=None, alias="clientSecret", repr=False
    )
    application_insights_app_id: str = Field(
        default="",
        alias="applicationInsightsAppId",
        validation_alias=AliasChoices(
            "applicationInsightsAppId", "analyticsAppId", "application_insights_app_id"
        ),
    )
    kusto_cluster_url: str = Field(
        default="",
        alias="kustoClusterUrl",
        validation_alias=AliasChoices(
            "kustoClusterUrl", "clusterUrl", "kusto_cluster_url"
        ),
    )
    cache_enabled: bool = Field(default=True, alias="cacheEnabled")
    cache_ttl_seconds: int = Field(
        default=DEFAULT_CACHE_TTL, alias="cacheTTLSeconds", ge=0
    )
    cache_cleanup_interval_seconds: int = Field(
        default=0, alias="cacheCleanupIntervalSeconds", ge=0
    )
    remove_pii: bool = Field(default=False, alias="removePII")
    port: int = Field(default=DEFAULT_PORT)
    workspace_path: str = Field(default_factory=_default_workspace, alias="workspacePath")
    queries_folder: str = Field(default="queries", alias="queriesFolder")
    references: List[Reference] = Field(default_factory=list)
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @property
    def cache_dir(self) -> Path:
        return Path(self.workspace_path) / ".vscode" / ".bctb" / "cache"

    @property
    def queries_dir(self) -> Path:
        return Path(self.workspace_path) / self.queries_folder


class CacheDefaults(BaseModel):
    enabled: Optional[bool] = None
    ttl_seconds: Optional[int] = Field(default=None, alias="ttlSeconds")
    cleanup_interval_seconds: Optional[int] = Field(
        default=None, alias="cleanupIntervalSeconds"
    )
    model_config = ConfigDict(populate_by_name=True)


class SanitizeDefaults(BaseModel):
    remove_pii: Optional[bool] = Field(default=None, alias="removePII")
    model_config = ConfigDict(populate_by_name=True)


class Settings(BaseModel):
    """The config file. Either a profile map or a single flat profile."""

    profiles: Optional[Dict[str, RawProfile]] = None
    default_profile: Optional[str] = Field(default=None, alias="defaultProfile")
    cache: Optional[CacheDefaults] = None
    sanitize: Optional[SanitizeDefaults] = None
    references: Optional[List[Reference]] = None
    tools: Optional[Tools] = Field(default_factory=Tools)
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def is_multi_profile(self) -> bool:
        return self.profiles is not None

    def profile_defaults(self) -> RawProfile:
        d = {}
        if self.cache is not None:
            d["cacheEnabled"] = self.cache.enabled
            d["cacheTTLSeconds"] = self.cache.ttl_seconds
            d["cacheCleanupIntervalSeconds"] = self.cache.cleanup_interval_seconds
        if self.sanitize is not None:
            d["removePII"] = self.sanitize.remove_pii
        if self.references is not None:
            d["references"] = [r.model_dump(mode="json") for r in self.references]
        return {k: v for k, v in d.items() if v is not None}

    def flat_profile(self) -> RawProfile:
        return dict(self.model_extra or {})


class EnvOverrides(BaseSettings):
    """BCTB_* environment variables for single profile deployments"""

    connection_name: Optional[str] = None
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    auth_flow: Optional[AuthFlow] = None
    app_insights_id: Optional[str] = None
    kusto_url: Optional[str] = None
    cache_enabled: Optional[bool] = None
    cache_ttl: Optional[int] = None
    remove_pii: Optional[bool] = None
    port: Optional[int] = None
    workspace_path: Optional[str] = None
    queries_folder: Optional[str] = None
    references: Optional[List[Reference]] = None
    profile: Optional[str] = None
    model_config = SettingsConfigDict(env_prefix="BCTB_", extra="ignore")

    _profile_fields: ClassVar[Dict[str, str]] = {
        "connection_name": "connectionName",
        "tenant_id": "tenantId",
        "client_id": "clientId",
        "client_secret": "clientSecret",
        "auth_flow": "authFlow",
        "app_insights_id": "applicationInsightsAppId",
        "kusto_url": "kustoClusterUrl",
        "cache_enabled": "cacheEnabled",
        "cache_ttl": "cacheTTLSeconds",
        "remove_pii": "removePII",
        "port": "port",
        "workspace_path": "workspacePath",
        "queries_folder": "queriesFolder",
        "references": "references",
    }

    def as_profile_fields(self) -> RawProfile:
        d = self.model_dump(mode="json", exclude_none=True)
        return {
            alias: d[name] for name, alias in self._profile_fields.items() if name in d
        }


def env_overrides() -> EnvOverrides:
    try:
        return EnvOverrides()
    except (SettingsError, ValidationError) as e:
        raise ConfigurationError(f"Invalid BCTB_* environment variable: {e}") from e


def _deep_merge(parent: RawProfile, child: RawProfile) -> RawProfile:
    result = dict(parent)
    for key, value in child.items():
        if key == "extends":
            continue
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _lookup_placeholder(m: re.Match) -> str:
    name = m.group(1)
    if name == "workspaceFolder":
        return _default_workspace()
    return environ.get(name, "")


def expand_env(value: Any) -> Any:
    """Expand ${VAR} in every string of a (nested) value. Unset vars become ''"""
    match value:
        case str():
            return _PLACEHOLDER.sub(_lookup_placeholder, value)
        case list() | tuple():
            return [expand_env(v) for v in value]
        case dict():
            return {k: expand_env(v) for k, v in value.items()}
    return value


def merge_profile_chain(profiles: Dict[str, RawProfile], name: str) -> RawProfile:
    """
    Walk the ``extends`` chain of ``name`` and merge child over parent.

    Raises ConfigurationError naming the first profile seen twice, or the
    first missing parent.
    """
    chain: List[RawProfile] = []
    visited: List[str] = []
    current: Optional[str] = name
    while current:
        if current in visited:
            raise ConfigurationError(
                f"Circular profile inheritance detected: {current}"
            )
        visited.append(current)
        if (profile := profiles.get(current)) is None:
            raise ConfigurationError(f"Profile '{current}' not found")
        chain.append(profile)
        current = profile.get("extends")

    return reduce(_deep_merge, reversed(chain), {})


def _to_profile(data: RawProfile, source: str) -> Profile:
    try:
        return Profile.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid profile '{source}': {e}") from e


def resolve(
    profiles: Dict[str, RawProfile],
    name: str,
    defaults: Optional[RawProfile] = None,
) -> Profile:
    merged = merge_profile_chain(profiles, name)
    if defaults:
        merged = _deep_merge(defaults, merged)
    return _to_profile(expand_env(merged), name)


def validate(profile: Profile) -> List[str]:
    errors = []
    if not profile.workspace_path:
        errors.append(
            "workspacePath is required - set it in your config file or via "
            "BCTB_WORKSPACE_PATH environment variable"
        )
    if profile.auth_flow != AuthFlow.azure_cli and not profile.tenant_id:
        errors.append("BCTB_TENANT_ID is required (unless using azure_cli auth flow)")
    if not profile.application_insights_app_id:
        errors.append("BCTB_APP_INSIGHTS_ID is required")
    if not profile.kusto_cluster_url:
        errors.append("BCTB_KUSTO_URL is required")
    if profile.auth_flow == AuthFlow.client_credentials:
        if not profile.client_id:
            errors.append("BCTB_CLIENT_ID is required for client_credentials auth flow")
        if not profile.client_secret:
            errors.append(
                "BCTB_CLIENT_SECRET is required for client_credentials auth flow"
            )
    return errors


# the default config is ~/.config/bctb/config.yaml
def default_config() -> Path:
    _top = "bctb"
    if (_top := find_spec(__name__)) and _top.name:
        _top = _top.name.split(".")[0]
    return (
        Path(environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        / _top
        / "config.yaml"
    )


def discover_config(cfg: Union[str, Path, None] = None) -> Optional[Path]:
    if cfg is not None:
        cfg = Path(cfg).expanduser()
        if not cfg.is_file():
            raise ConfigurationError(f"Config file not found: {cfg}")
        return cfg.resolve()

    candidates = [Path.cwd() / CONFIG_FILE_NAME]
    if ws := environ.get("BCTB_WORKSPACE_PATH"):
        candidates.append(Path(ws) / CONFIG_FILE_NAME)
    candidates += [
        Path.home() / ".bctb" / "config.json",
        Path.home() / CONFIG_FILE_NAME,
        default_config(),
    ]
    return next((c.resolve() for c in candidates if c.is_file()), None)


def load_settings(cfg: Path) -> Settings:
    try:
        with cfg.open(encoding="utf-8") as f:
            s = safe_load(f)
        return Settings.model_validate(s if s else {})
    except (OSError, YAMLError) as e:
        raise ConfigurationError(f"Unable to read config file {cfg}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config file {cfg}: {e}") from e


_settings: ContextVar[Settings] = ContextVar("settings", default=None)


def configure(cfg: Union[str, Path, None] = None, force=False) -> Settings:
    if not force and isinstance(_settings.get(), Settings):
        return _settings.get()
    path = discover_config(cfg)
    _settings.set(load_settings(path) if path is not None else Settings())
    return _settings.get()


def instance() -> Settings:
    if not isinstance(_settings.get(), Settings):
        _settings.set(Settings())
    return _settings.get()


def load_profile(
    cfg: Union[str, Path, None] = None, profile_name: Optional[str] = None
) -> Profile:
    """
    Build the active profile: config file (multi or single profile), then
    BCTB_* environment overrides for single profile and file-less setups.
    """
    env = env_overrides()
    path = discover_config(cfg)
    if path is None:
        log.logger("config").info("No config file found, using environment")
        return _to_profile(expand_env(env.as_profile_fields()), "environment")

    log.logger("config").info("Loading config", path=str(path))
    s = load_settings(path)
    _settings.set(s)
    if s.is_multi_profile:
        name = profile_name or env.profile or s.default_profile
        if not name:
            raise ConfigurationError(
                "No profile specified. Use --profile <name> or set BCTB_PROFILE env var"
            )
        if name not in s.profiles:
            raise ConfigurationError(f"Profile '{name}' not found in config")
        log.logger("config").info("Using profile", profile=name)
        return resolve(s.profiles, name, defaults=s.profile_defaults())

    data = _deep_merge(s.profile_defaults(), s.flat_profile())
    data = _deep_merge(data, env.as_profile_fields())
    return _to_profile(expand_env(data), str(path))


def config_template() -> Dict[str, Any]:
    return {
        "profiles": {
            "default": {
                "connectionName": "My BC Production",
                "authFlow": AuthFlow.azure_cli.value,
                "applicationInsightsAppId": "your-app-insights-id",
                "kustoClusterUrl": "https://ade.applicationinsights.io",
                "workspacePath": "${workspaceFolder}",
                "queriesFolder": "queries",
            }
        },
        "defaultProfile": "default",
        "cache": {"enabled": True, "ttlSeconds": DEFAULT_CACHE_TTL},
        "sanitize": {"removePII": False},
        "references": [
            {
                "name": "Microsoft BC Telemetry Samples",
                "type": ReferenceType.github.value,
                "url": "https://github.com/microsoft/BCTech",
                "enabled": True,
            }
        ],
    }


_TEMPLATE_HEADER = """\
# BC Telemetry Buddy configuration
#
# profiles        named connections, a profile can `extends` another profile
# defaultProfile  used when neither --profile nor BCTB_PROFILE is given
# authFlow        azure_cli, device_code or client_credentials
#                 (client_credentials also needs tenantId, clientId and clientSecret)
# cache           defaults for every profile, ttlSeconds is the lifetime of a result
# sanitize        removePII redacts emails, IP addresses, GUIDs and phone numbers
# ${VAR} is read from the environment, ${workspaceFolder} is the workspace path
"""


def init_config(cfg: Path = None, dry_run: bool = False) -> str | None:
    """Write the template; YAML output starts with a comment block describing the fields"""
    if cfg is None:
        cfg = default_config()

    d = config_template()
    if cfg.suffix == ".json":
        text = json.dumps(d, indent=2)
    else:
        text = _TEMPLATE_HEADER + dump(d, sort_keys=False)
    if dry_run:
        return text

    cfg.parent.mkdir(parents=True, exist_ok=True)
    cfg.write_text(text, encoding="utf-8")
