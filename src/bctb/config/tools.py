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
from enum import IntFlag, auto


class ToolType(IntFlag):
    FOR_QUERY = auto()
    FOR_CONTEXT = auto()
    FOR_CACHE = auto()
    FOR_REFERENCES = auto()


def all_tool_types() -> ToolType:
    return ToolType.FOR_QUERY | ToolType.FOR_CONTEXT | ToolType.FOR_CACHE | ToolType.FOR_REFERENCES
