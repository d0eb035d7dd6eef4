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
Error taxonomy shared by every component.

Each error carries a stable machine readable ``kind`` and a JSON-RPC
application error code so the protocol server can map it without knowing
where it came from.
"""
from typing import Any, Dict, List, Optional


class TelemetryError(Exception):
    code: int = -32000

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__

    def details(self) -> Dict[str, Any]:
        return {}

    def to_error_data(self) -> Dict[str, Any]:
        return {"kind": self.kind, **self.details()}


class ConfigurationError(TelemetryError):
    code = -32001


class AuthenticationError(TelemetryError):
    code = -32002

    def __init__(self, message: str, flow: Optional[str] = None):
        super().__init__(message)
        self.flow = flow

    def details(self) -> Dict[str, Any]:
        return {"flow": self.flow} if self.flow else {}


class InvalidQueryError(TelemetryError):
    code = -32003

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(message)
        self.violations = violations or []

    def details(self) -> Dict[str, Any]:
        return {"violations": self.violations} if self.violations else {}


class RateLimitError(TelemetryError):
    code = -32004


class NetworkError(TelemetryError):
    code = -32005


class QueryExecutionError(TelemetryError):
    code = -32006

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def details(self) -> Dict[str, Any]:
        return {"status": self.status} if self.status is not None else {}


class StorageError(TelemetryError):
    code = -32007


class CacheError(StorageError):
    pass
