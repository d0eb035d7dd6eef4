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
"""Redaction of personally identifiable information in query results"""
import re
from typing import Any

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_IPV4 = re.compile(r"\b(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})\b")
_GUID = re.compile(
    r"\b([0-9a-f]{8})-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
    re.IGNORECASE,
)
_PHONE = re.compile(r"\b(?:\+?1[-.]?)?\(?([0-9]{3})\)?[-.]?([0-9]{3})[-.]?([0-9]{4})\b")
_URL_USERINFO = re.compile(r"\b(https?://)([^:/\s]+):([^@/\s]+)@")


def redact_emails(text: str) -> str:
    return _EMAIL.sub("[EMAIL_REDACTED]", text)


def mask_ips(text: str) -> str:
    """keep the first two octets"""
    return _IPV4.sub(r"\1.\2.xxx.xxx", text)


def mask_guids(text: str) -> str:
    """keep the first block"""
    return _GUID.sub(r"\1-xxxx-xxxx-xxxx-xxxxxxxxxxxx", text)


def redact_phones(text: str) -> str:
    return _PHONE.sub("[PHONE_REDACTED]", text)


def redact_sensitive_urls(text: str) -> str:
    return _URL_USERINFO.sub(r"\1[USER_REDACTED]:[PASS_REDACTED]@", text)


def sanitize(text: str, enabled: bool = True) -> str:
    if not enabled or not text:
        return text

    for redact in (
        redact_emails,
        mask_ips,
        mask_guids,
        redact_phones,
        redact_sensitive_urls,
    ):
        text = redact(text)
    return text


def sanitize_object(obj: Any, enabled: bool = True) -> Any:
    """Apply ``sanitize`` to every string inside nested lists and dicts"""
    if not enabled:
        return obj

    match obj:
        case str():
            return sanitize(obj)
        case list() | tuple():
            return [sanitize_object(item) for item in obj]
        case dict():
            return {k: sanitize_object(v) for k, v in obj.items()}
        case _:
            return obj
