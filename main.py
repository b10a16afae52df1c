"""Command-line interface for the SoftDev Solutions lead capture service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from typing import Sequence

import anyio
import httpx
from dotenv import load_dotenv

from leadsite.config import ENV_FILE_NAME, Settings
from leadsite.mailer import EmailService
from leadsite.store import create_store

logger = logging.getLogger("leadsite.main")

_DEFAULT_SERVICE_URL = "http://localhost:8000"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SoftDev Solutions lead capture utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the users table and indexes if they are missing")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )

    stats_parser = subparsers.add_parser("stats", help="Print registration statistics from a running service")
    stats_parser.add_argument(
        "--service-url",
        default=None,
        help="Base URL of a running service (default: LEADSITE_SERVICE_URL or http://localhost:8000)",
    )

    subparsers.add_parser("email-test", help="Verify the configured SMTP credentials without sending mail")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "stats", "email-test"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


async def _initialise_store(settings: Settings) -> None:
    store = create_store(settings.database)
    try:
        await store.initialize()
    finally:
        await store.close()


async def _check_email(settings: Settings) -> bool:
    service = EmailService(settings.email)
    await service.start()
    try:
        result = await service.test_connection()
    finally:
        await service.close()

    if result.success:
        print(f"Email service is working ({service.mode} mode).")
        return True
    print(f"Email service check failed: {result.error}")
    return False


def _serve(*, host: str, port: int) -> None:
    from leadsite.application import create_application
    import uvicorn

    logger.info("Starting lead capture API on http://%s:%s", host, port)
    uvicorn.run(create_application(), host=host, port=port, log_level="info")


def _show_stats(service_url: str | None) -> bool:
    base_url = service_url or os.getenv("LEADSITE_SERVICE_URL") or _DEFAULT_SERVICE_URL
    endpoint = base_url.rstrip("/") + "/admin/database"

    try:
        response = httpx.post(endpoint, json={"action": "stats"}, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"Failed to contact service: {exc}")
        return False

    if response.status_code != 200:
        print(f"Service responded with {response.status_code}: {response.text.strip()}")
        return False

    try:
        payload = response.json()
    except ValueError:
        print("Service returned an unexpected response format.")
        return False

    stats = payload.get("stats", {})
    print(f"Total registrations: {payload.get('totalUsers', 0)}")
    print(f"Last 30 days: {stats.get('last30Days', 0)}")
    print(f"Average per day: {stats.get('averagePerDay', 0)}")
    return True


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    load_dotenv(ENV_FILE_NAME)

    args = _parse_args(argv)

    if args.command == "serve":
        _serve(host=args.host, port=args.port)
    elif args.command == "init-db":
        settings = Settings.from_env()
        anyio.run(_initialise_store, settings)
        print(f"Database initialisation complete ({settings.database.backend}).")
    elif args.command == "stats":
        if not _show_stats(args.service_url):
            raise SystemExit(1)
    elif args.command == "email-test":
        if not anyio.run(_check_email, Settings.from_env()):
            raise SystemExit(1)


if __name__ == "__main__":
    main()
