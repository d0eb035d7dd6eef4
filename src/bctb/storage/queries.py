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
Saved queries: ``.kql`` documents with a labeled comment header, searched by
keyword relevance to give the calling agent examples of working queries.

    // Query: Slow AL methods
    // Category: Performance
    // Purpose: Find long running methods
    // Use case: Weekly performance review
    // Created: 2025-01-31
    // Tags: performance, al

    traces | where ...

The category of a query is its first directory below the queries folder.
"""
import re
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bctb.errors import StorageError
from bctb.log import logger

ROOT_CATEGORY = "Root"

_HEADER = re.compile(
    r"^//\s*(query|category|purpose|use\s*case|created|tags)\s*:(.*)$", re.IGNORECASE
)
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9\s-]")
_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.-]*$")

# relevance weight per matched field, per search term
WEIGHTS = {
    "name": 10,
    "tags": 8,
    "file_name": 7,
    "purpose": 5,
    "use_case": 5,
    "kql": 3,
}


class SavedQuery(BaseModel):
    name: str
    category: str = ROOT_CATEGORY
    purpose: str = ""
    use_case: str = ""
    created: str = ""
    tags: List[str] = Field(default_factory=list)
    kql: str
    file_path: str = ""
    file_name: str = ""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def score(self, terms: List[str]) -> int:
        total = 0
        for term in (t.lower() for t in terms):
            for field, weight in WEIGHTS.items():
                match getattr(self, field):
                    case list() as values:
                        hit = any(term in v.lower() for v in values)
                    case value:
                        hit = term in value.lower()
                if hit:
                    total += weight
        return total


def parse(
    text: str, category: str = ROOT_CATEGORY, path: Optional[Path] = None
) -> Optional[SavedQuery]:
    """
    Parse a saved query document. Returns None when there is no query body;
    missing header lines leave the matching fields empty.
    """
    header: Dict[str, str] = {}
    lines = text.splitlines()
    start = len(lines)
    for i, line in enumerate(lines):
        stripped = line.strip()
        if not stripped.startswith("//"):
            start = i
            break
        if m := _HEADER.match(stripped):
            label = re.sub(r"\s+", "", m.group(1).lower())
            header[label] = m.group(2).strip()

    kql = "\n".join(lines[start:]).strip()
    if not kql:
        return None

    file_name = path.name if path is not None else ""
    tags = [t.strip() for t in header.get("tags", "").split(",") if t.strip()]
    return SavedQuery(
        name=header.get("query") or (path.stem if path is not None else ""),
        category=category,
        purpose=header.get("purpose", ""),
        use_case=header.get("usecase", ""),
        created=header.get("created", ""),
        tags=tags,
        kql=kql,
        file_path=str(path) if path is not None else "",
        file_name=file_name,
    )


def _one_line(value: str) -> str:
    # a header field must not end the comment header early
    return " ".join(p.strip() for p in value.splitlines() if p.strip())


def render(query: SavedQuery) -> str:
    lines = [
        f"// Query: {query.name}",
        f"// Category: {query.category}",
        f"// Purpose: {query.purpose}",
        f"// Use case: {query.use_case}",
        f"// Created: {query.created}",
        f"// Tags: {', '.join(query.tags)}",
        "",
        query.kql.strip(),
        "",
    ]
    return "\n".join(line.rstrip() if line.startswith("//") else line for line in lines)


def file_name_for(name: str) -> str:
    stem = " ".join(_UNSAFE_NAME.sub("", name).split())
    if not stem:
        raise StorageError(f"Query name '{name}' has no usable characters for a file name")
    return f"{stem}.kql"


class QueryLibrary:
    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _category_of(self, path: Path) -> str:
        parts = path.relative_to(self.directory).parts
        return parts[0] if len(parts) > 1 else ROOT_CATEGORY

    def _load(self, path: Path) -> Optional[SavedQuery]:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger("queries").warning(
                "Failed to read saved query", path=str(path), error=str(e)
            )
            return None
        if (query := parse(text, self._category_of(path), path)) is None:
            logger("queries").warning("No KQL found in saved query", path=str(path))
        return query

    def all(self) -> List[SavedQuery]:
        if not self.directory.is_dir():
            return []
        queries = [
            q
            for path in sorted(self.directory.rglob("*.kql"))
            if path.is_file() and (q := self._load(path)) is not None
        ]
        logger("queries").debug(
            "Loaded saved queries", count=len(queries), directory=str(self.directory)
        )
        return queries

    def list_queries(self, tag: Optional[str] = None) -> List[SavedQuery]:
        queries = self.all()
        if tag:
            tag = tag.lower()
            queries = [q for q in queries if any(t.lower() == tag for t in q.tags)]
        return queries

    def search(self, keywords: List[str]) -> List[SavedQuery]:
        terms = [k for k in keywords if k and k.strip()]
        queries = self.all()
        if not terms:
            return queries

        scored = [(q.score(terms), q) for q in queries]
        ranked = sorted(
            ((s, q) for s, q in scored if s > 0), key=lambda sq: (-sq[0], sq[1].name)
        )
        logger("queries").info(
            "Searched saved queries", terms=terms, matches=len(ranked)
        )
        return [q for _, q in ranked]

    def categories(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.iterdir() if p.is_dir())

    def save(
        self,
        name: str,
        kql: str,
        category: Optional[str] = None,
        purpose: str = "",
        use_case: str = "",
        tags: Optional[List[str]] = None,
        created: Optional[str] = None,
    ) -> Path:
        """Write a query document and return its path; an existing file is replaced"""
        if not kql or not kql.strip():
            raise StorageError("Cannot save a query without KQL")

        category = (category or "").strip()
        if category and (category in (".", "..") or not _SAFE_SEGMENT.match(category)):
            raise StorageError(f"Invalid category '{category}'")

        target = self.directory / category if category else self.directory
        path = target / file_name_for(name)
        query = SavedQuery(
            name=_one_line(name),
            category=category or ROOT_CATEGORY,
            purpose=_one_line(purpose or ""),
            use_case=_one_line(use_case or ""),
            created=_one_line(created or date.today().isoformat()),
            tags=[_one_line(t) for t in tags or [] if t.strip()],
            kql=kql,
        )
        try:
            target.mkdir(parents=True, exist_ok=True)
            path.write_text(render(query), encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to save query '{name}': {e}") from e

        logger("queries").info("Saved query", path=str(path), category=query.category)
        return path
