"""TOML reader/writer for sources.toml, the list of sync sources."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

import tomli_w

from assetsync.exceptions import SourceConfigError
from assetsync.services.sources import (
    DirectoryLocator,
    DynamicUrlLocator,
    FilterRules,
    MultiUrlLocator,
    SourceDescriptor,
    SourceKind,
    StaticUrlLocator,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 24

EXIA_API_URL = (
    "https://raw.githubusercontent.com/IsolateOB/ExiaInvasion/main/exia-invasion/src/api.js"
)
TW_URL_PATTERN = r"NIKKE_TW_URL\s*=\s*['\"`]([^'\"`]+)['\"`]"
EN_URL_PATTERN = r"NIKKE_EN_URL\s*=\s*['\"`]([^'\"`]+)['\"`]"


def default_sources() -> list[SourceDescriptor]:
    """Sprite mirror plus TW and EN character data, each checked every 24 hours."""
    interval = DEFAULT_INTERVAL_HOURS * 3600
    return [
        SourceDescriptor(
            name="sprite",
            kind=SourceKind.DIRECTORY_MIRROR,
            remote_locator=DirectoryLocator(
                repo="Nikke-db/Nikke-db.github.io", path="images/sprite"
            ),
            local_target=Path("src/assets/images/sprite"),
            interval_seconds=interval,
            filter_rules=FilterRules.build(
                [".png", ".jpg", ".jpeg", ".webp", ".gif"],
                ["4koma", "4格", "四格", "comic"],
            ),
        ),
        SourceDescriptor(
            name="characters-tw",
            kind=SourceKind.SINGLE_JSON_DYNAMIC,
            remote_locator=DynamicUrlLocator(watched_file_url=EXIA_API_URL, pattern=TW_URL_PATTERN),
            local_target=Path("src/assets/data/characters_tw.json"),
            interval_seconds=interval,
        ),
        SourceDescriptor(
            name="characters-en",
            kind=SourceKind.SINGLE_JSON_DYNAMIC,
            remote_locator=DynamicUrlLocator(watched_file_url=EXIA_API_URL, pattern=EN_URL_PATTERN),
            local_target=Path("src/assets/data/characters_en.json"),
            interval_seconds=interval,
        ),
    ]


def _require(entry: dict[str, Any], key: str, name: str) -> Any:
    if key not in entry:
        msg = f"Source {name!r} is missing required key {key!r}"
        raise SourceConfigError(msg)
    return entry[key]


def _resolve_path(raw: str, base_dir: Path) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else base_dir / path


def _interval_seconds(entry: dict[str, Any], name: str) -> float:
    try:
        if "interval_seconds" in entry:
            return float(entry["interval_seconds"])
        return float(entry.get("interval_hours", DEFAULT_INTERVAL_HOURS)) * 3600
    except (TypeError, ValueError) as exc:
        msg = f"Source {name!r} has a non-numeric interval"
        raise SourceConfigError(msg) from exc


def parse_source(entry: dict[str, Any], base_dir: Path) -> SourceDescriptor:
    """Build one SourceDescriptor from a ``[[sources]]`` table."""
    if not isinstance(entry, dict):
        msg = f"Source entry must be a table, got {type(entry).__name__}"
        raise SourceConfigError(msg)
    name = str(_require(entry, "name", "<unnamed>"))
    try:
        kind = SourceKind(_require(entry, "kind", name))
    except ValueError as exc:
        msg = f"Source {name!r} has unknown kind {entry['kind']!r}"
        raise SourceConfigError(msg) from exc

    locator: DirectoryLocator | StaticUrlLocator | DynamicUrlLocator | MultiUrlLocator
    if kind is SourceKind.DIRECTORY_MIRROR:
        locator = DirectoryLocator(
            repo=str(_require(entry, "repo", name)), path=str(_require(entry, "path", name))
        )
    elif kind is SourceKind.SINGLE_JSON_STATIC:
        locator = StaticUrlLocator(url=str(_require(entry, "url", name)))
    elif kind is SourceKind.SINGLE_JSON_DYNAMIC:
        locator = DynamicUrlLocator(
            watched_file_url=str(_require(entry, "watched_file_url", name)),
            pattern=str(_require(entry, "pattern", name)),
        )
    else:
        patterns = _require(entry, "patterns", name)
        targets = _require(entry, "targets", name)
        if not isinstance(patterns, dict) or not isinstance(targets, dict):
            msg = f"Source {name!r}: 'patterns' and 'targets' must be tables"
            raise SourceConfigError(msg)
        locator = MultiUrlLocator(
            watched_file_url=str(_require(entry, "watched_file_url", name)),
            patterns={str(k): str(v) for k, v in patterns.items()},
            targets={str(k): _resolve_path(str(v), base_dir) for k, v in targets.items()},
        )

    raw_target = entry.get("local_target")
    return SourceDescriptor(
        name=name,
        kind=kind,
        remote_locator=locator,
        local_target=_resolve_path(str(raw_target), base_dir) if raw_target else None,
        interval_seconds=_interval_seconds(entry, name),
        enabled=bool(entry.get("enabled", True)),
        filter_rules=FilterRules.build(
            entry.get("allowed_extensions"), entry.get("exclude_name_substrings")
        ),
        commit_tracking=bool(entry.get("commit_tracking", True)),
        validate_urls=bool(entry.get("validate_urls", True)),
    )


def load_sources(path: Path) -> list[SourceDescriptor]:
    """Parse sources.toml. Relative paths are resolved against the file's directory."""
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        msg = f"Invalid TOML in {path}: {exc}"
        raise SourceConfigError(msg) from exc
    entries = data.get("sources", [])
    if not isinstance(entries, list):
        msg = f"{path}: 'sources' must be an array of tables"
        raise SourceConfigError(msg)
    return [parse_source(entry, path.parent) for entry in entries]


def source_to_dict(descriptor: SourceDescriptor) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "name": descriptor.name,
        "kind": descriptor.kind.value,
        "enabled": descriptor.enabled,
    }
    if descriptor.interval_seconds % 3600 == 0:
        entry["interval_hours"] = int(descriptor.interval_seconds // 3600)
    else:
        entry["interval_seconds"] = descriptor.interval_seconds
    if descriptor.local_target is not None:
        entry["local_target"] = descriptor.local_target.as_posix()

    locator = descriptor.remote_locator
    if isinstance(locator, DirectoryLocator):
        entry["repo"] = locator.repo
        entry["path"] = locator.path
    elif isinstance(locator, StaticUrlLocator):
        entry["url"] = locator.url
    elif isinstance(locator, DynamicUrlLocator):
        entry["watched_file_url"] = locator.watched_file_url
        entry["pattern"] = locator.pattern
    else:
        entry["watched_file_url"] = locator.watched_file_url
        entry["patterns"] = dict(locator.patterns)
        entry["targets"] = {k: v.as_posix() for k, v in locator.targets.items()}

    rules = descriptor.filter_rules
    if rules.allowed_extensions:
        entry["allowed_extensions"] = sorted(rules.allowed_extensions)
    if rules.exclude_name_substrings:
        entry["exclude_name_substrings"] = sorted(rules.exclude_name_substrings)
    if not descriptor.commit_tracking:
        entry["commit_tracking"] = False
    if not descriptor.validate_urls:
        entry["validate_urls"] = False
    return entry


def write_sources(path: Path, descriptors: list[SourceDescriptor]) -> None:
    """Write descriptors back to sources.toml."""
    data = {"sources": [source_to_dict(d) for d in descriptors]}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(tomli_w.dumps(data).encode("utf-8"))


def ensure_sources_file(path: Path) -> list[SourceDescriptor]:
    """Load sources.toml, scaffolding it with the defaults when it does not exist."""
    if not path.exists():
        logger.info("No sources file at %s, writing defaults", path)
        write_sources(path, default_sources())
    return load_sources(path)
