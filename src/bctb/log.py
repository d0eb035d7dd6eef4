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
import logging
import sys
from os import environ
from pathlib import Path
from typing import Optional

import structlog

_configured = False
_handlers: list = []
_TOP = "bctb"


def get_log_file() -> Path:
    state_home = Path(environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    return state_home / _TOP / f"{_TOP}.log"


def _shared_processors():
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


# All handlers point at stderr or a file. stdout belongs to the stdio
# transport and must only ever carry protocol messages.
def configure(enable_json_logging: bool = False, to_file: bool = False):
    global _configured
    renderer = (
        structlog.processors.JSONRenderer()
        if enable_json_logging
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handlers = [logging.StreamHandler(sys.stderr)]
    if to_file:
        log_file = get_log_file()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    for h in _handlers:
        root.removeHandler(h)
    _handlers.clear()
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
        _handlers.append(h)

    structlog.configure(
        processors=_shared_processors()
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def set_level(level: str):
    logging.getLogger().setLevel(level.upper())
    # third party loggers are noisy at debug
    for name in ("msal", "urllib3", "aiohttp.access"):
        logging.getLogger(name).setLevel(max(logging.INFO, logging.getLogger().level))


def logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    if not _configured:
        configure()
    return structlog.get_logger(name if name is not None else _TOP)
