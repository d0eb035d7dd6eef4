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
import json
import logging
import sys
from contextlib import asynccontextmanager
from enum import StrEnum, auto
from functools import reduce
from operator import ior
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple

import uvicorn
from click import Choice
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.prompts import Prompt
from rich import console, table, print as pp
from typer import Argument, BadParameter, Exit, Option, Typer
from yaml import dump

from bctb import log
from bctb.config import settings
from bctb.config.tools import ToolType
from bctb.errors import ConfigurationError, TelemetryError
from bctb.servers.http import create_app
from bctb.servers.jsonrpc import (
    Dispatcher,
    RpcError,
    StdioServer,
    ToolRegistry,
    stdin_reader,
)
from bctb.tools import tools


class Transports(StrEnum):
    stdio = auto()
    http = auto()
    mcp = auto()


def build_registry(
    services: Optional[tools.Services] = None, mode: Optional[ToolType] = None
) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools.get_tools(For=mode):
        registry.register(tool(services))
    return registry


def init(
    services: Optional[tools.Services] = None, mode: Optional[ToolType] = None
) -> FastMCP:
    """The same tool table served by the MCP SDK, for MCP native clients"""
    log.logger("init").info(f"Initializing MCP server with mode={mode}")

    @asynccontextmanager
    async def sweeping(_server: FastMCP):
        sweeper = services.sweeper if services is not None else None
        if sweeper is not None:
            sweeper.start()
        try:
            yield {}
        finally:
            if sweeper is not None:
                await sweeper.stop()

    mcp = FastMCP("BC Telemetry Buddy", lifespan=sweeping)
    for tool in tools.get_tools(For=mode):
        tool_instance = tool(services)
        mcp.add_tool(
            tool_instance.invoke,
            name=tool.name,
            description=tool_instance.invoke.__doc__,
        )
    mcp.add_prompt(
        Prompt.from_function(tools.system_prompt, "System Prompt", "System Prompt")
    )
    return mcp


async def serve_stdio(services: tools.Services, mode: Optional[ToolType] = None):
    dispatcher = Dispatcher(build_registry(services, mode))
    server = StdioServer(dispatcher, sys.stdout.buffer)
    services.sweeper.start()
    try:
        await server.serve(await stdin_reader())
    finally:
        await services.sweeper.stop()


def serve_http(
    services: tools.Services,
    host: str,
    port: int,
    log_level: str,
    mode: Optional[ToolType] = None,
):
    app = create_app(Dispatcher(build_registry(services, mode)), services.sweeper)
    config = uvicorn.Config(
        app=app, host=host, port=port, log_level=log_level.lower(), access_log=False
    )
    log.logger("server_startup").info(f"Serving JSON-RPC on http://{host}:{port}/rpc")
    uvicorn.Server(config).run()


def load_services(
    config_file: Optional[Path], profile: Optional[str]
) -> tools.Services:
    """Fatal configuration errors exit, incomplete profiles are only reported"""
    try:
        p = settings.load_profile(config_file, profile)
    except ConfigurationError as e:
        log.logger("config").error("Invalid configuration", error=e.message)
        pp(f"[red]Configuration error:[/red] {e.message}", file=sys.stderr)
        raise Exit(code=1)

    services = tools.configure(tools.Services(p))
    for problem in services.problems:
        log.logger("config").warning("Configuration problem", problem=problem)
    return services


def _mode() -> List[str]:
    return [tt.name for tt in ToolType]


def _server_mode() -> Optional[ToolType]:
    if (ts := settings.instance().tools) is not None:
        return ts.server_mode
    return None


ty = Typer(context_settings=dict(help_option_names=["-h", "--help"]))


@ty.command(name="run", help="Run the telemetry query server")
def main(
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="The config file (json or yaml)"),
    ] = None,
    profile: Annotated[
        Optional[str],
        Option("-p", "--profile", help="The profile to use from a multi profile config"),
    ] = None,
    transport: Annotated[
        Transports, Option("-t", "--transport", help="How clients talk to the server")
    ] = Transports.stdio,
    log_to_file: Annotated[Optional[bool], Option(help="Log to file")] = False,
    enable_json_logging: Annotated[
        Optional[bool], Option(help="Enable JSON logs")
    ] = False,
    log_level: Annotated[
        Optional[str],
        Option(
            help="The log level", click_type=Choice(list(logging._nameToLevel.keys()))
        ),
    ] = "INFO",
    port: Annotated[
        Optional[int], Option(help="The HTTP port, defaults to the profile port")
    ] = None,
    host: Annotated[
        Optional[str],
        Option(help="Where uvicorn listens for requests"),
    ] = "127.0.0.1",
):
    log.configure(enable_json_logging=enable_json_logging, to_file=log_to_file)
    log.set_level(log_level)

    services = load_services(config_file, profile)
    mode = _server_mode()
    match transport:
        case Transports.stdio:
            asyncio.run(serve_stdio(services, mode))
        case Transports.http:
            serve_http(
                services,
                host=host,
                port=port if port is not None else services.profile.port,
                log_level=log_level,
                mode=mode,
            )
        case Transports.mcp:
            init(services, mode).run(transport="stdio")


# --------------------------------------------------------------------------------
# configuration

tc = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="config",
    help="Configuration management",
)

_SECRET_KEYS = {"clientSecret", "client_secret"}


def _redact(d: Any) -> Any:
    match d:
        case dict():
            return {
                k: "****" if k in _SECRET_KEYS and v else _redact(v) for k, v in d.items()
            }
        case list():
            return [_redact(v) for v in d]
        case _:
            return d


@tc.command("init", help="Write a configuration template with one profile")
def create_config(
    output: Annotated[
        Optional[Path],
        Option("-o", "--output", help="Where to write, defaults to the user config"),
    ] = None,
    dry_run: Annotated[
        bool, Option(help="Dry run, do not write the config file. Just print it")
    ] = False,
    force: Annotated[bool, Option(help="Overwrite an existing file")] = False,
):
    target = output if output is not None else settings.default_config()
    if target.exists() and not (force or dry_run):
        raise BadParameter(f"{target} already exists, use --force to overwrite")
    if (d := settings.init_config(target, dry_run=dry_run)) is not None:
        pp(d)
    else:
        pp(f"Created config file: {target!s}")


@tc.command("validate", help="Resolve the active profile and report problems")
def validate_config(
    config_file: Annotated[
        Optional[Path], Option("-c", "--cfg", help="The config file")
    ] = None,
    profile: Annotated[
        Optional[str], Option("-p", "--profile", help="The profile to validate")
    ] = None,
):
    try:
        p = settings.load_profile(config_file, profile)
    except ConfigurationError as e:
        pp(f"[red]✗[/red] {e.message}")
        raise Exit(code=1)

    if problems := settings.validate(p):
        for problem in problems:
            pp(f"[red]✗[/red] {problem}")
        raise Exit(code=1)
    pp(f"[green]✓[/green] Profile '{p.connection_name}' ({p.auth_flow.value}) is valid")


@tc.command("list", help="Show the configuration in use, if it exists")
def show_config(
    config_file: Annotated[
        Optional[Path], Option("-c", "--cfg", help="The config file")
    ] = None,
    show_filename: Annotated[
        bool, Option(help="Only show the filename of the config file")
    ] = False,
):
    path = settings.discover_config(config_file)
    pp(f"Config file: {path!s} (exists = {path is not None})")
    if path is not None and not show_filename:
        s = settings.load_settings(path)
        pp(
            dump(
                _redact(
                    s.model_dump(
                        exclude_none=True,
                        mode="json",
                        exclude_unset=True,
                        by_alias=True,
                    )
                ),
                sort_keys=False,
            )
        )
    pp(f"Default log file: {log.get_log_file()!s}")


@tc.command("profiles", help="List the profiles of a multi profile config")
def list_profiles(
    config_file: Annotated[
        Optional[Path], Option("-c", "--cfg", help="The config file")
    ] = None,
):
    if (path := settings.discover_config(config_file)) is None:
        pp("No config file found")
        raise Exit(code=1)

    s = settings.load_settings(path)
    if not s.is_multi_profile:
        pp(f"{path!s} holds a single profile")
        return

    tab = table.Table(
        table.Column("Profile", justify="left", style="cyan"),
        "Connection",
        "Auth flow",
        "Extends",
        "Default",
        title=f"Profiles in {path.name}",
    )
    for name, raw in s.profiles.items():
        raw = raw or {}
        tab.add_row(
            name,
            str(raw.get("connectionName", "")),
            str(raw.get("authFlow", "")),
            str(raw.get("extends", "")),
            "✓" if name == s.default_profile else "",
        )
    console.Console().print(tab)


# --------------------------------------------------------------------------------
# authentication

ta = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="auth",
    help="Authentication helpers",
)


@ta.command("test", help="Acquire a token once and report who it belongs to")
def auth_test(
    config_file: Annotated[
        Optional[Path], Option("-c", "--cfg", help="The config file")
    ] = None,
    profile: Annotated[
        Optional[str], Option("-p", "--profile", help="The profile to use")
    ] = None,
):
    services = load_services(config_file, profile)
    try:
        token = asyncio.run(services.credentials.get_token())
    except TelemetryError as e:
        pp(f"[red]✗[/red] {e.message}")
        raise Exit(code=1)
    pp(
        f"[green]✓[/green] Authenticated with {services.credentials.flow.value}"
        f" as {token.user or 'unknown user'}, expires {token.expires_at.isoformat()}"
    )


# --------------------------------------------------------------------------------
# testing support

tl = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="tools",
    help="Support for testing tools directly",
)


@tl.command(
    name="list",
    help="List the available tools",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_list(
    mode: Annotated[
        Optional[List[str]],
        Option("-m", "--mode", help="Server mode", click_type=Choice(_mode())),
    ] = None,
):
    For = reduce(ior, [ToolType[m.upper()] for m in mode]) if mode else None
    tab = table.Table(
        table.Column("Tool", justify="left", style="cyan"),
        "Description",
        "For",
        title="Tools list",
        show_lines=True,
    )

    for tool in tools.get_tools(For=For):
        doc = (tool.invoke.__doc__ or "No Description").strip().splitlines()[0]
        tab.add_row(tool.name, doc, tools.get_for(tool).name)
    console.Console().print(tab)


def _value(v: str) -> Any:
    if v[:1] in ("[", "{"):
        try:
            return json.loads(v)
        except json.JSONDecodeError:
            return v
    return v


@tl.command(
    name="invoke",
    help="Execute an available tool",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_exec(
    tool: Annotated[str, Option("-t", "--tool", help="The tool to execute")],
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="The config file"),
    ] = None,
    profile: Annotated[
        Optional[str], Option("-p", "--profile", help="The profile to use")
    ] = None,
    args: Annotated[
        Optional[List[str]],
        Argument(help="The arguments to pass to the tool (arg=value ...)"),
    ] = None,
):
    def _to_kw(arg: str) -> Tuple[str, Any]:
        if "=" not in arg:
            raise BadParameter(f"Argument {arg} is not in the form arg=value")
        k, v = arg.split("=", 1)
        return k, _value(v)

    kw: Dict[str, Any] = dict(map(_to_kw, args or []))
    registry = build_registry(load_services(config_file, profile))
    if registry.get(tool) is None:
        raise BadParameter(f"Tool {tool} not found")

    try:
        result = asyncio.run(registry.call(tool, kw))
    except TelemetryError as e:
        pp(f"[red]{e.kind}:[/red] {e.message}")
        raise Exit(code=1)
    except RpcError as e:
        pp(f"[red]{e.message}:[/red] {e.data}")
        raise Exit(code=1)
    pp(result)


ty.add_typer(tl)
ty.add_typer(tc)
ty.add_typer(ta)


def cli():
    ty()


if __name__ == "__main__":
    cli()
