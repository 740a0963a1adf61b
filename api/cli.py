#!/usr/bin/env python3
"""
TILEGUARD CLI Tool.

Command-line interface for operating the tile recovery service:
- Running the API server
- Health checks against a running server
- Inspecting the recovery ladder for a GetMap URL and trying one attempt

Usage:
    python -m api.cli serve --port 8000
    python -m api.cli check-health
    python -m api.cli show-ladder --url "https://host/wms?..."
    python -m api.cli try-attempt --url "https://host/wms?..." --attempt 3
"""
import argparse
import asyncio
import sys

import requests

from src.tiles import locator as locators
from src.config import get_recovery_config
from src.tiles.errors import ErrorCategory


def serve(host: str, port: int) -> None:
    """Run the API server."""
    import uvicorn

    get_recovery_config().configure_logging()
    uvicorn.run("api.main:app", host=host, port=port, log_level="info")


def check_health(base_url: str) -> None:
    """Check API health."""
    url = f"{base_url.rstrip('/')}/api/health"
    try:
        response = requests.get(url, timeout=5)
        if response.status_code == 200:
            data = response.json()
            print(f"\nAPI Status: {data.get('status', 'unknown')}")
            tile = data.get("components", {}).get("tile_engine", {})
            details = tile.get("details", {})
            print(f"Tile Engine: {tile.get('status', 'unknown')} - {tile.get('message', '')}")
            if details:
                print(
                    f"Resources: {details.get('total_resources', 0)} total, "
                    f"{details.get('healthy_resources', 0)} healthy, "
                    f"{details.get('problematic_resources', 0)} problematic, "
                    f"{details.get('exhausted_resources', 0)} exhausted"
                )
            print(f"Timestamp: {data.get('timestamp', 'unknown')}")
        else:
            print(f"\nAPI returned status code: {response.status_code}")
            sys.exit(1)
    except requests.exceptions.ConnectionError:
        print("\nError: Could not connect to API. Is the server running?")
        sys.exit(1)


def show_ladder(url: str, attempts: int) -> None:
    """Print the locator used for each same-transport attempt."""
    print("\n" + "=" * 80)
    print("RECOVERY LADDER")
    print("=" * 80)
    for attempt in range(1, attempts + 1):
        print(f"\nAttempt {attempt}:")
        print(f"  {locators.retry_locator(url, attempt, now_ms=0)}")
    print("\nTransport substitution (protocol errors):")
    print(f"  minimal-protocol:   {locators.minimal_parameters(url)}")
    print(f"  alternate-endpoint: {locators.alternate_endpoint(url)}")
    print("=" * 80 + "\n")


def try_attempt(url: str, attempt: int, category: str) -> None:
    """Run one ladder attempt against a live upstream."""
    from src.tiles.ladder import StrategyLadder

    async def _run():
        ladder = StrategyLadder()
        try:
            return await ladder.run(url, attempt, ErrorCategory(category))
        finally:
            await ladder.aclose()

    outcome = asyncio.run(_run())
    if outcome.succeeded:
        payload = outcome.payload
        print(
            f"\nRecovered with '{outcome.strategy}' after {outcome.steps_tried} step(s): "
            f"{payload.width}x{payload.height} {payload.content_type}, {len(payload.content)} bytes"
        )
    else:
        obs = outcome.observation
        print(
            f"\nAll {outcome.steps_tried} step(s) failed "
            f"(status={obs.status_code if obs else None}, "
            f"incomplete={obs.incomplete if obs else None})"
        )
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="TILEGUARD CLI Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Run the API:
    python -m api.cli serve --port 8000

  Check API health:
    python -m api.cli check-health --base-url http://localhost:8000

  Show locator variants for a tile:
    python -m api.cli show-ladder --url "https://host/wms?layers=hs&bbox=..."

  Try transport substitution against the live server:
    python -m api.cli try-attempt --url "https://host/wms?..." --attempt 5 --category protocol-error
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    health_parser = subparsers.add_parser("check-health", help="Check API health")
    health_parser.add_argument("--base-url", default="http://localhost:8000")

    ladder_parser = subparsers.add_parser("show-ladder", help="Print locator variants")
    ladder_parser.add_argument("--url", required=True, help="Original GetMap URL")
    ladder_parser.add_argument("--attempts", type=int, default=4)

    attempt_parser = subparsers.add_parser("try-attempt", help="Run one recovery attempt")
    attempt_parser.add_argument("--url", required=True, help="Original GetMap URL")
    attempt_parser.add_argument("--attempt", type=int, default=1)
    attempt_parser.add_argument(
        "--category",
        default=ErrorCategory.NETWORK_ISSUE.value,
        choices=[c.value for c in ErrorCategory if c.retryable],
    )

    args = parser.parse_args()

    if args.command == "serve":
        serve(args.host, args.port)
    elif args.command == "check-health":
        check_health(args.base_url)
    elif args.command == "show-ladder":
        show_ladder(args.url, args.attempts)
    elif args.command == "try-attempt":
        try_attempt(args.url, args.attempt, args.category)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
