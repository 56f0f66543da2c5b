"""Tests for directory listing, additive mirroring and JSON snapshots."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import pytest

from assetsync.services.fetcher import Fetcher, list_local_files, normalize_json_text
from assetsync.services.github_client import RemoteFile
from assetsync.services.sources import (
    DirectoryLocator,
    FilterRules,
    SourceDescriptor,
    SourceKind,
)

if TYPE_CHECKING:
    from pathlib import Path

    from assetsync.services.github_client import GitHubClient
    from tests.conftest import FakeUpstream

REPO = "Nikke-db/Nikke-db.github.io"
SPRITE_PATH = "images/sprite"
LISTING_URL = f"https://api.github.com/repos/{REPO}/contents/{SPRITE_PATH}"


def _sprite_source(target: Path) -> SourceDescriptor:
    return SourceDescriptor(
        name="sprite",
        kind=SourceKind.DIRECTORY_MIRROR,
        remote_locator=DirectoryLocator(repo=REPO, path=SPRITE_PATH),
        local_target=target,
        interval_seconds=3600,
        filter_rules=FilterRules.build(
            [".png", ".jpg", ".jpeg", ".webp", ".gif"], ["4koma", "4格", "四格", "comic"]
        ),
    )


class TestNormalizeJsonText:
    def test_reindents_valid_json(self) -> None:
        text, parsed = normalize_json_text('{"a":1,"b":[1,2]}')
        assert parsed is True
        assert text == '{\n  "a": 1,\n  "b": [\n    1,\n    2\n  ]\n}'

    def test_keeps_non_ascii(self) -> None:
        text, _ = normalize_json_text('{"name":"紅蓮"}')
        assert "紅蓮" in text

    def test_invalid_json_is_returned_verbatim(self) -> None:
        assert normalize_json_text("<html>oops</html>") == ("<html>oops</html>", False)


class TestFilterRules:
    def test_extension_allow_list_is_case_insensitive(self) -> None:
        rules = FilterRules.build(["png"], [])
        assert rules.accepts("A.PNG") is True
        assert rules.accepts("a.txt") is False

    def test_exclude_substrings(self) -> None:
        rules = FilterRules.build([".png"], ["4koma", "comic"])
        assert rules.accepts("rapi_4KOMA_01.png") is False
        assert rules.accepts("Comic-strip.png") is False
        assert rules.accepts("rapi.png") is True

    def test_empty_allow_list_allows_everything(self) -> None:
        assert FilterRules().accepts("anything.bin") is True


class TestFetchDirectoryFiles:
    @pytest.mark.asyncio
    async def test_filters_listing(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        upstream.add_listing(
            REPO, SPRITE_PATH, ["a.png", "b.webp", "notes.txt", "4koma_1.png", "四格.png"]
        )
        upstream.add_dir_entry(REPO, SPRITE_PATH, "nested.png")
        files = await Fetcher(github).fetch_directory_files(_sprite_source(tmp_path / "s"))
        assert sorted(f.name for f in files) == ["a.png", "b.webp"]

    @pytest.mark.asyncio
    async def test_rate_limit_yields_empty_list(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        upstream.add_listing(REPO, SPRITE_PATH, ["a.png"])
        upstream.fail(LISTING_URL, 403)
        files = await Fetcher(github).fetch_directory_files(_sprite_source(tmp_path / "s"))
        assert files == []


class TestMirrorDirectory:
    @pytest.mark.asyncio
    async def test_downloads_missing_files_only(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        target = tmp_path / "sprite"
        target.mkdir()
        (target / "a.png").write_bytes(b"local copy")
        upstream.add_listing(REPO, SPRITE_PATH, ["a.png", "b.png"])
        source = _sprite_source(target)
        fetcher = Fetcher(github)

        result = await fetcher.mirror_directory(source, await fetcher.fetch_directory_files(source))

        assert result.downloaded == ["b.png"]
        assert result.skipped == ["a.png"]
        assert result.success is True
        assert (target / "a.png").read_bytes() == b"local copy"
        assert (target / "b.png").read_bytes() == b"data:b.png"
        raw_dir = f"https://raw.githubusercontent.com/{REPO}/main/{SPRITE_PATH}"
        assert upstream.count(f"{raw_dir}/a.png") == 0
        assert upstream.count(f"{raw_dir}/b.png") == 1

    @pytest.mark.asyncio
    async def test_never_deletes_local_files(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        target = tmp_path / "sprite"
        target.mkdir()
        (target / "gone-upstream.png").write_bytes(b"keep me")
        upstream.add_listing(REPO, SPRITE_PATH, ["a.png"])
        source = _sprite_source(target)
        fetcher = Fetcher(github)
        await fetcher.mirror_directory(source, await fetcher.fetch_directory_files(source))
        assert (target / "gone-upstream.png").read_bytes() == b"keep me"

    @pytest.mark.asyncio
    async def test_failed_file_is_counted(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        upstream.add_listing(REPO, SPRITE_PATH, ["a.png", "b.png"])
        upstream.fail(f"https://raw.githubusercontent.com/{REPO}/main/{SPRITE_PATH}/b.png", 500)
        source = _sprite_source(tmp_path / "sprite")
        fetcher = Fetcher(github)
        result = await fetcher.mirror_directory(source, await fetcher.fetch_directory_files(source))
        assert result.downloaded == ["a.png"]
        assert result.failed == ["b.png"]
        assert result.success is False
        assert not (tmp_path / "sprite" / "b.png").exists()

    @pytest.mark.asyncio
    async def test_missing_download_url_is_a_failure(
        self, tmp_path: Path, github: GitHubClient
    ) -> None:
        remote = RemoteFile(name="a.png", path="a.png", download_url=None, size=1, type="file")
        result = await Fetcher(github).mirror_directory(
            _sprite_source(tmp_path / "sprite"), [remote]
        )
        assert result.failed == ["a.png"]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, tmp_path: Path) -> None:
        in_flight = 0
        peak = 0

        class SlowGitHub:
            async def get_bytes(self, url: str) -> bytes:
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return b"x"

        remotes = [
            RemoteFile(
                name=f"{i}.png",
                path=f"{i}.png",
                download_url=f"https://raw/{i}.png",
                size=1,
                type="file",
            )
            for i in range(20)
        ]
        fetcher = Fetcher(SlowGitHub(), concurrency=5)  # type: ignore[arg-type]
        result = await fetcher.mirror_directory(_sprite_source(tmp_path / "sprite"), remotes)
        assert len(result.downloaded) == 20
        assert peak == 5


class TestFetchAndPersist:
    @pytest.mark.asyncio
    async def test_writes_normalized_json(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        url = "https://cdn.example.com/chars.json"
        upstream.add_json(url, {"characters": [{"id": 1, "name": "Rapi"}]})
        target = tmp_path / "data" / "chars.json"
        assert await Fetcher(github).fetch_and_persist(url, target) is True
        text = target.read_text(encoding="utf-8")
        assert text.startswith('{\n  "characters"')
        assert json.loads(text) == {"characters": [{"id": 1, "name": "Rapi"}]}

    @pytest.mark.asyncio
    async def test_writes_raw_text_when_not_json(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        url = "https://cdn.example.com/chars.json"
        upstream.add_file(url, "not json at all")
        target = tmp_path / "chars.json"
        assert await Fetcher(github).fetch_and_persist(url, target) is True
        assert target.read_text(encoding="utf-8") == "not json at all"

    @pytest.mark.asyncio
    async def test_http_error_returns_false(
        self, tmp_path: Path, github: GitHubClient, upstream: FakeUpstream
    ) -> None:
        url = "https://cdn.example.com/chars.json"
        upstream.fail(url, 502)
        target = tmp_path / "chars.json"
        assert await Fetcher(github).fetch_and_persist(url, target) is False
        assert not target.exists()


class TestDirectoryStats:
    @pytest.mark.asyncio
    async def test_counts(self, tmp_path: Path, github: GitHubClient) -> None:
        target = tmp_path / "sprite"
        target.mkdir()
        (target / "a.png").write_bytes(b"1")
        (target / ".hidden.png").write_bytes(b"1")
        (target / "readme.txt").write_bytes(b"1")
        remotes = [
            RemoteFile(name=n, path=n, download_url=f"https://raw/{n}", size=1, type="file")
            for n in ("a.png", "b.png")
        ]
        stats = await Fetcher(github).directory_stats(_sprite_source(target), remotes)
        assert stats == {"local_files": 1, "remote_files": 2, "missing_files": 1}

    def test_list_local_files_missing_directory(self, tmp_path: Path) -> None:
        assert list_local_files(tmp_path / "nope", _sprite_source(tmp_path)) == []
