#!/usr/bin/env python3
"""
Wayfarer Orchestrator Entry Point.

Runs the trip-planning orchestrator with its HTTP API.

Usage:
    python run_orchestrator.py                              # config.yaml defaults
    python run_orchestrator.py --config my.yaml             # Custom config
    python run_orchestrator.py --persistence-url http://localhost:9100

Prerequisites:
    - OPENROUTER_API_KEY set in the environment
"""

import asyncio
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        description="Wayfarer Orchestrator - multi-agent trip planning",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_orchestrator.py                          # Run with config.yaml
    python run_orchestrator.py --data-dir /var/wayfarer # Snapshot directory
    python run_orchestrator.py --api-port 9002          # Custom API port
        """
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: WAYFARER_CONFIG or ./config.yaml)"
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for request snapshots (default: persistence.data_dir)"
    )
    parser.add_argument(
        "--persistence-url",
        default=None,
        help="Send snapshots to this HTTP service instead of files"
    )
    parser.add_argument(
        "--api-host",
        default=None,
        help="HTTP API host (default: api.host or 127.0.0.1)"
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="HTTP API port (default: api.port or 9001)"
    )
    return parser


async def main(argv=None):
    """Run the orchestrator with HTTP API."""
    from orchestrator.config import load_config
    from orchestrator.main import Orchestrator, run_orchestrator

    args = build_parser().parse_args(argv)

    config = load_config(args.config)
    api_config = config.get("api", {}) or {}
    api_host = args.api_host or api_config.get("host", "127.0.0.1")
    api_port = args.api_port or int(api_config.get("port", 9001))

    orchestrator = Orchestrator(
        config=config,
        data_dir=args.data_dir,
        persistence_url=args.persistence_url,
    )

    print("Starting Wayfarer Orchestrator...")
    print(f"  Snapshots: {args.persistence_url or orchestrator.data_dir or 'disabled'}")
    print(f"  Tiers: {orchestrator.gateway.list_tiers()}")
    print(f"  API: http://{api_host}:{api_port}")
    print()

    await run_orchestrator(orchestrator, api_host=api_host, api_port=api_port)


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested...")


if __name__ == "__main__":
    cli()
