"""Operator CLI for the asset sync service."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any
from urllib.parse import quote, urlparse

import httpx

DEFAULT_SERVER = "http://localhost:8000"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


class AdminClient:
    """Client for the asset sync HTTP API."""

    def __init__(self, server_url: str, token: str | None = None) -> None:
        self.server_url = server_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(base_url=self.server_url, headers=headers, timeout=300.0)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> AdminClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def statuses(self) -> list[dict[str, Any]]:
        resp = self.client.get("/api/sync/tasks")
        resp.raise_for_status()
        result: list[dict[str, Any]] = resp.json()
        return result

    def status(self, name: str) -> dict[str, Any]:
        resp = self.client.get(f"/api/sync/tasks/{quote(name)}")
        resp.raise_for_status()
        result: dict[str, Any] = resp.json()
        return result

    def run(self, name: str) -> bool:
        """Force an update of one task; returns whether it succeeded."""
        resp = self.client.post(f"/api/sync/tasks/{quote(name)}/run")
        resp.raise_for_status()
        return bool(resp.json()["success"])

    def run_all(self) -> dict[str, bool]:
        resp = self.client.post("/api/sync/run")
        resp.raise_for_status()
        results: dict[str, bool] = resp.json()["results"]
        return results

    def set_enabled(self, name: str, enabled: bool) -> dict[str, Any]:
        resp = self.client.put(
            f"/api/sync/tasks/{quote(name)}/enabled",
            json={"enabled": enabled},
        )
        resp.raise_for_status()
        result: dict[str, Any] = resp.json()
        return result


def format_status(status: dict[str, Any]) -> str:
    """One line per task: name, state, timestamps, then error and stats if present."""
    line = (
        f"{status['name']:<20} {status['status']:<9}"
        f" last_check={status.get('last_check') or '-'}"
        f" next_check={status.get('next_check') or '-'}"
    )
    if status.get("error"):
        line += f"\n    error: {status['error']}"
    stats = status.get("stats")
    if stats:
        line += "\n    " + ", ".join(f"{k}={v}" for k, v in sorted(stats.items()))
    return line


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="assetsync-admin",
        description="Inspect and control asset sync tasks",
    )
    parser.add_argument(
        "--server",
        "-s",
        default=os.environ.get("ASSETSYNC_SERVER", DEFAULT_SERVER),
        help="Server URL (default: $ASSETSYNC_SERVER or %(default)s)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("ASSETSYNC_ADMIN_TOKEN"),
        help="Admin token (default: $ASSETSYNC_ADMIN_TOKEN)",
    )
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers = parser.add_subparsers(dest="command")
    status_parser = subparsers.add_parser("status", help="Show task status")
    status_parser.add_argument("name", nargs="?", help="Task name (default: all tasks)")
    run_parser = subparsers.add_parser("run", help="Force an update now")
    run_parser.add_argument("name", nargs="?", help="Task name (default: all enabled tasks)")
    enable_parser = subparsers.add_parser("enable", help="Enable a task and run it once")
    enable_parser.add_argument("name")
    disable_parser = subparsers.add_parser("disable", help="Disable a task")
    disable_parser.add_argument("name")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    if args.command in {"run", "enable", "disable"} and not args.token:
        print("Error: --token or ASSETSYNC_ADMIN_TOKEN is required for this command")
        return 1

    with AdminClient(server_url, args.token) as client:
        try:
            if args.command == "status":
                statuses = [client.status(args.name)] if args.name else client.statuses()
                for status in statuses:
                    print(format_status(status))
                return 0

            if args.command == "run":
                if args.name:
                    results = {args.name: client.run(args.name)}
                else:
                    results = client.run_all()
                for name, ok in sorted(results.items()):
                    print(f"  {name}: {'ok' if ok else 'FAILED'}")
                return 0 if all(results.values()) else 2

            status = client.set_enabled(args.name, args.command == "enable")
            print(format_status(status))
            return 0
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text
            print(f"Error: {exc.response.status_code} {detail}")
            return 1
        except httpx.HTTPError as exc:
            print(f"Error: {exc}")
            return 1


def cli_entry() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
