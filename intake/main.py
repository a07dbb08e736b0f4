from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import httpx
from opentelemetry import trace

from intake.core.config import Settings, get_settings
from intake.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from intake.jobs.pipeline import IngestionPipeline
from intake.schemas.candidates import ATTRIBUTE_MODELS
from intake.schemas.runs import PipelineRunResult
from intake.services.fetcher import ResilientFetcher
from intake.services.sources import HttpFeedSource
from intake.services.store import InMemoryStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def load_source_configs(path: Path) -> list[dict[str, Any]]:
    """Read a JSON list of feed definitions: ``{"name", "url", "category"?, "items_key"?, "headers"?}``."""
    decoded = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(decoded, dict):
        decoded = decoded.get("sources", [])
    if not isinstance(decoded, list):
        raise ValueError(f"{path}: expected a list of sources")

    configs: list[dict[str, Any]] = []
    for index, entry in enumerate(decoded):
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: source #{index} is not an object")
        url = entry.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ValueError(f"{path}: source #{index} has no url")
        category = entry.get("category")
        if category is not None and category not in ATTRIBUTE_MODELS:
            raise ValueError(f"{path}: source #{index} has unknown category {category!r}")
        headers = entry.get("headers")
        configs.append(
            {
                "name": str(entry.get("name") or url.strip()),
                "url": url.strip(),
                "category": category,
                "items_key": entry.get("items_key"),
                "headers": headers if isinstance(headers, dict) else {},
            }
        )
    return configs


async def run_pipeline(sources_path: Path, store_path: Path | None, settings: Settings) -> PipelineRunResult:
    configs = load_source_configs(sources_path)
    store = InMemoryStore(store_path)
    async with httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent},
        follow_redirects=True,
    ) as client:
        fetcher = ResilientFetcher.from_settings(client, settings)
        sources = [HttpFeedSource(fetcher=fetcher, **config) for config in configs]
        pipeline = IngestionPipeline.from_settings(settings, corpus=store, sink=store)
        with tracer.start_as_current_span("cli.run"):
            return await pipeline.run(sources)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="candidate-intake", description="Fetch, dedupe and score candidate content.")
    subcommands = parser.add_subparsers(dest="command", required=True)
    run_parser = subcommands.add_parser("run", help="Run one ingestion pass over the configured sources")
    run_parser.add_argument("--sources", type=Path, required=True, help="JSON file listing feed sources")
    run_parser.add_argument("--store", type=Path, help="JSON lines file used as corpus and sink")
    run_parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    settings = get_settings()
    telemetry_runtime = setup_telemetry(settings)
    try:
        try:
            result = asyncio.run(run_pipeline(args.sources, args.store, settings))
        except (OSError, ValueError) as exc:
            logger.error("could not start run: %s", exc)
            return 2
        print(result.model_dump_json(indent=2))
        return 1 if result.status == "failed" else 0
    finally:
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    sys.exit(main())
