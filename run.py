from __future__ import annotations

import argparse
import asyncio
import subprocess
import sys


def _run_bootstrap() -> None:
    subprocess.run(
        [sys.executable, "-m", "pip", "install", "-e", "."],
        check=True,
    )
    subprocess.run(
        [sys.executable, "-m", "playwright", "install", "chromium"],
        check=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the browser command broker.")
    parser.add_argument(
        "--bootstrap",
        action="store_true",
        help="Install dependencies and Playwright browsers before starting.",
    )
    sub = parser.add_subparsers(dest="mode", required=True)
    sub.add_parser("broker", help="Serve tool calls on stdio and broker them to the executor.")
    sub.add_parser("executor", help="Drive a local browser for a connected broker.")
    audit = sub.add_parser("audit", help="Print recent audit log entries.")
    audit.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()

    if args.bootstrap:
        _run_bootstrap()

    from tabbroker.app import configure_logging, run_broker, run_executor, show_audit
    from tabbroker.config import BrokerConfig
    from tabbroker.errors import PortInUseError

    config = BrokerConfig.from_env()
    configure_logging(config.log_level, config.log_file)

    if args.mode == "audit":
        for line in asyncio.run(show_audit(config, args.limit)):
            print(line)
        return

    runner = run_broker if args.mode == "broker" else run_executor
    try:
        asyncio.run(runner(config))
    except PortInUseError as exc:
        print(f"Browser API init error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
