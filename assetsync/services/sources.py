"""Source descriptors: what to mirror, from where, into which local path."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from assetsync.exceptions import SourceConfigError


class SourceKind(StrEnum):
    """Sync strategy selected for a source."""

    DIRECTORY_MIRROR = "directory_mirror"
    SINGLE_JSON_DYNAMIC = "single_json_dynamic"
    SINGLE_JSON_STATIC = "single_json_static"
    MULTI_URL_WATCH = "multi_url_watch"


@dataclass(frozen=True)
class DirectoryLocator:
    """A folder inside a GitHub repository: ``repo`` is ``owner/name``."""

    repo: str
    path: str

    @property
    def owner_and_name(self) -> tuple[str, str]:
        owner, _, name = self.repo.partition("/")
        return owner, name


@dataclass(frozen=True)
class StaticUrlLocator:
    url: str


@dataclass(frozen=True)
class DynamicUrlLocator:
    """A download URL extracted from a watched file by a regex capture group."""

    watched_file_url: str
    pattern: str
    resolved_url: str | None = None


@dataclass(frozen=True)
class MultiUrlLocator:
    """Several labelled URLs extracted from one watched file, each with its own target file."""

    watched_file_url: str
    patterns: dict[str, str]
    targets: dict[str, Path]
    resolved_urls: dict[str, str] = field(default_factory=dict)


RemoteLocator = DirectoryLocator | StaticUrlLocator | DynamicUrlLocator | MultiUrlLocator

_LOCATOR_TYPES: dict[SourceKind, type] = {
    SourceKind.DIRECTORY_MIRROR: DirectoryLocator,
    SourceKind.SINGLE_JSON_STATIC: StaticUrlLocator,
    SourceKind.SINGLE_JSON_DYNAMIC: DynamicUrlLocator,
    SourceKind.MULTI_URL_WATCH: MultiUrlLocator,
}


@dataclass(frozen=True)
class FilterRules:
    """Extension allow-list and case-insensitive name exclude-list.

    An empty ``allowed_extensions`` allows every extension.
    """

    allowed_extensions: frozenset[str] = frozenset()
    exclude_name_substrings: frozenset[str] = frozenset()

    @classmethod
    def build(
        cls,
        allowed_extensions: list[str] | None = None,
        exclude_name_substrings: list[str] | None = None,
    ) -> FilterRules:
        extensions = frozenset(
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in allowed_extensions or []
        )
        excludes = frozenset(s.lower() for s in exclude_name_substrings or [] if s)
        return cls(allowed_extensions=extensions, exclude_name_substrings=excludes)

    def accepts(self, file_name: str) -> bool:
        """Return True when ``file_name`` passes both the allow-list and the exclude-list."""
        lower = file_name.lower()
        if self.allowed_extensions:
            ext = posixpath.splitext(lower)[1]
            if ext not in self.allowed_extensions:
                return False
        return not any(pattern in lower for pattern in self.exclude_name_substrings)


@dataclass
class SourceDescriptor:
    """One syncable remote resource.

    Only ``enabled`` and ``remote_locator`` change after registration; the
    locator is replaced (never mutated) when a dynamic URL resolves to a new
    value.
    """

    name: str
    kind: SourceKind
    remote_locator: RemoteLocator
    local_target: Path | None
    interval_seconds: float
    enabled: bool = True
    filter_rules: FilterRules = field(default_factory=FilterRules)
    commit_tracking: bool = True
    validate_urls: bool = True

    def __post_init__(self) -> None:
        expected = _LOCATOR_TYPES[self.kind]
        if not isinstance(self.remote_locator, expected):
            msg = (
                f"Source {self.name!r}: kind {self.kind.value} requires "
                f"{expected.__name__}, got {type(self.remote_locator).__name__}"
            )
            raise SourceConfigError(msg)
        if self.interval_seconds <= 0:
            msg = f"Source {self.name!r}: interval must be positive"
            raise SourceConfigError(msg)
        if self.kind is not SourceKind.MULTI_URL_WATCH and self.local_target is None:
            msg = f"Source {self.name!r}: local_target is required for {self.kind.value}"
            raise SourceConfigError(msg)
        if isinstance(self.remote_locator, MultiUrlLocator) and set(
            self.remote_locator.patterns
        ) != set(self.remote_locator.targets):
            msg = f"Source {self.name!r}: every pattern label needs exactly one target"
            raise SourceConfigError(msg)

    def output_paths(self) -> list[Path]:
        """Every local path this source writes to."""
        if isinstance(self.remote_locator, MultiUrlLocator):
            return list(self.remote_locator.targets.values())
        return [self.local_target] if self.local_target is not None else []
