"""URL resolution: extract download URLs from a watched upstream file.

The watched file has historically come in two shapes: a Jupyter notebook
whose code cells define the URLs, and a plain script (``api.js``) with
``NIKKE_TW_URL = '...'`` style constants. The shape is sniffed once per
download and handed to the matching extractor.
"""

from __future__ import annotations

import json
import logging
import re
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlparse

from assetsync.exceptions import PatternResolutionError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from assetsync.services.github_client import GitHubClient, TextDocument
    from assetsync.services.sources import DynamicUrlLocator

logger = logging.getLogger(__name__)

_VALID_URL_RE = re.compile(r"^https?://.+")


class DocumentShape(StrEnum):
    NOTEBOOK = "notebook"
    SCRIPT = "script"


class Extractor(Protocol):
    """Finds the first capture group of ``pattern`` in a document."""

    def extract(self, text: str, pattern: re.Pattern[str]) -> str | None: ...


class ScriptExtractor:
    """Searches the whole text."""

    def extract(self, text: str, pattern: re.Pattern[str]) -> str | None:
        match = pattern.search(text)
        if match is None or not match.groups() or not match.group(1):
            return None
        return match.group(1)


class NotebookExtractor:
    """Searches code cells in order; the first cell with a match wins."""

    def extract(self, text: str, pattern: re.Pattern[str]) -> str | None:
        try:
            notebook = json.loads(text)
        except ValueError:
            logger.warning("Watched notebook is not valid JSON")
            return None
        cells = notebook.get("cells") if isinstance(notebook, dict) else None
        if not isinstance(cells, list):
            return None
        script = ScriptExtractor()
        for cell in cells:
            if not isinstance(cell, dict) or cell.get("cell_type") != "code":
                continue
            source = cell.get("source")
            if isinstance(source, list):
                source = "".join(str(line) for line in source)
            if not isinstance(source, str) or not source:
                continue
            found = script.extract(source, pattern)
            if found:
                return found
        return None


EXTRACTORS: dict[DocumentShape, Extractor] = {
    DocumentShape.NOTEBOOK: NotebookExtractor(),
    DocumentShape.SCRIPT: ScriptExtractor(),
}


def sniff_shape(url: str, content_type: str, text: str) -> DocumentShape:
    """Decide whether a watched file is a notebook or a plain script.

    The file extension wins over the content type because raw GitHub hosts
    serve ``.ipynb`` files as ``text/plain``.
    """
    path = urlparse(url).path.lower()
    if path.endswith(".ipynb"):
        return DocumentShape.NOTEBOOK
    lowered_type = content_type.lower()
    if path.endswith(".js") or "javascript" in lowered_type or "text/plain" in lowered_type:
        return DocumentShape.SCRIPT
    try:
        data = json.loads(text)
    except ValueError:
        return DocumentShape.SCRIPT
    if isinstance(data, dict) and isinstance(data.get("cells"), list):
        return DocumentShape.NOTEBOOK
    return DocumentShape.SCRIPT


def compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        msg = f"Invalid extraction pattern {pattern!r}: {exc}"
        raise PatternResolutionError(msg) from exc
    if compiled.groups < 1:
        msg = f"Extraction pattern {pattern!r} has no capture group"
        raise PatternResolutionError(msg)
    return compiled


def extract_url(document: TextDocument, pattern: str, *, validate: bool = True) -> str:
    """Apply ``pattern`` to ``document`` with the extractor for its shape.

    Raises PatternResolutionError when nothing matches or the capture is not
    an http(s) URL (with ``validate``).
    """
    shape = sniff_shape(document.url, document.content_type, document.text)
    found = EXTRACTORS[shape].extract(document.text, compile_pattern(pattern))
    if not found:
        msg = f"Pattern {pattern!r} did not match {shape.value} at {document.url}"
        raise PatternResolutionError(msg)
    found = found.strip()
    if validate and not _VALID_URL_RE.match(found):
        msg = f"Resolved value {found!r} from {document.url} is not an http(s) URL"
        raise PatternResolutionError(msg)
    return found


class UrlResolver:
    """Downloads watched files and resolves the URLs they define."""

    def __init__(self, github: GitHubClient) -> None:
        self.github = github

    async def resolve(self, locator: DynamicUrlLocator, *, validate: bool = True) -> str:
        logger.info("Checking dynamic URL source %s", locator.watched_file_url)
        document = await self.github.get_text(locator.watched_file_url)
        return extract_url(document, locator.pattern, validate=validate)

    async def resolve_many(
        self,
        watched_file_url: str,
        patterns: Mapping[str, str],
        *,
        validate: bool = True,
    ) -> dict[str, str]:
        """Resolve every labelled pattern from a single download of the watched file.

        All labels must resolve; the first failure raises.
        """
        document = await self.github.get_text(watched_file_url)
        return {
            label: extract_url(document, pattern, validate=validate)
            for label, pattern in patterns.items()
        }
