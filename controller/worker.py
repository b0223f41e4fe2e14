"""Command line entry point for the scanning worker."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from bundling.buffer import OpportunityBuffer
from controller.scheduler import ScanController
from controller.settings import SettingsError, WorkerSettings, load_settings
from dedupe.cache import DedupeCache
from normalize.events import EventNormalizer
from odds_client.client import OddsApiClient
from persistence.database import Database


def build_controller(settings: WorkerSettings) -> ScanController:
    client = OddsApiClient(settings.odds_api_key, regions=settings.regions)
    return ScanController(
        client,
        Database(settings.database_path),
        settings,
        dedupe_cache=DedupeCache(settings.dedupe_ttl_ms),
        buffer=OpportunityBuffer(settings.bundle_window_ms),
        normalizer=EventNormalizer(odds_format=client.odds_format),
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Scan bookmaker odds for arbitrages and middles.")
    parser.add_argument("--once", action="store_true", help="run a single poll and exit")
    parser.add_argument("--env-file", default=None, help="path to a .env file")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        settings = load_settings()
    except SettingsError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    controller = build_controller(settings)
    if args.once:
        result = controller.run_poll()
        return 1 if result.error else 0

    def _shutdown(signum, _frame) -> None:
        logging.getLogger("edgewatch").info("Received signal %s, shutting down", signum)
        controller.stop(timeout=0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    controller.start()
    controller.wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
