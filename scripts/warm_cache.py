#!/usr/bin/env python3
"""
Pre-fill the proxy's disk cache for a list of resource paths.

Runs the same orchestrator the service uses, so entries land in the cache
exactly as if a client had requested them: fresh entries are left alone,
entries past the refresh threshold are refreshed, missing or expired ones
are fetched from the origin.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from shared.config import get_config  # noqa: E402
from shared.errors import CacheProxyException  # noqa: E402
from service_proxy.app.adapters.origin_client import OriginClient  # noqa: E402
from service_proxy.app.caching.keys import ResourceKey  # noqa: E402
from service_proxy.app.caching.orchestrator import CacheOrchestrator  # noqa: E402
from service_proxy.app.caching.refresh_queue import RefreshQueue  # noqa: E402
from service_proxy.app.caching.store import CacheStore  # noqa: E402


def read_paths(lines: Iterable[str]) -> List[str]:
    """Strip blanks and ``#`` comments from a path list."""
    paths = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        paths.append(line)
    return paths


async def warm(
    paths: List[str],
    *,
    orchestrator: CacheOrchestrator,
    concurrency: int = 5,
) -> Dict[str, Any]:
    """Resolve every path through ``orchestrator`` and summarize outcomes."""
    semaphore = asyncio.Semaphore(max(1, concurrency))
    summary: Dict[str, Any] = {
        "planned": len(paths),
        "outcomes": {"hit": 0, "refresh": 0, "miss": 0, "stale": 0},
        "errors": [],
    }

    async def _warm_one(raw_path: str) -> None:
        async with semaphore:
            try:
                key = ResourceKey.from_path(raw_path)
                result = await orchestrator.get(key)
            except CacheProxyException as exc:
                summary["errors"].append({"path": raw_path, "code": exc.code, "error": exc.message})
                return
            summary["outcomes"][result.outcome.value] += 1

    queue = orchestrator.refresh_queue
    await queue.start(orchestrator.refresh)
    try:
        await asyncio.gather(*(_warm_one(path) for path in paths))
        await queue.join()
    finally:
        await queue.stop()

    return summary


async def _run(args: argparse.Namespace, paths: List[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.cache_dir:
        overrides["cache_dir"] = args.cache_dir
    if args.origin:
        overrides["origin_base_url"] = args.origin
    config = get_config(**overrides)

    store = CacheStore(config.cache_dir)
    store.ensure_root()
    origin = OriginClient(
        config.origin_base_url,
        timeout=config.origin_timeout_seconds,
        verify_tls=config.origin_verify_tls,
        ca_bundle=config.origin_ca_bundle,
    )
    orchestrator = CacheOrchestrator(
        store,
        origin,
        RefreshQueue(workers=config.refresh_workers, maxsize=config.refresh_queue_size),
        expiry_seconds=config.cache_expiry_seconds,
        refresh_seconds=config.cache_refresh_seconds,
        coalesce_fetches=config.coalesce_fetches,
    )
    try:
        return await warm(paths, orchestrator=orchestrator, concurrency=args.concurrency)
    finally:
        await origin.aclose()


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pre-fill the proxy cache for a list of paths.")
    parser.add_argument("paths", nargs="*", help="Resource paths to warm, e.g. /images/a.png")
    parser.add_argument("--paths-file", type=Path, default=None, help="File with one path per line")
    parser.add_argument("--cache-dir", default=None, help="Cache root (defaults to CACHE_PROXY_CACHE_DIR)")
    parser.add_argument("--origin", default=None, help="Origin base URL (defaults to CACHE_PROXY_ORIGIN_BASE_URL)")
    parser.add_argument("--concurrency", type=int, default=5, help="Concurrent warm operations")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    paths = list(args.paths)
    if args.paths_file:
        paths.extend(read_paths(args.paths_file.read_text().splitlines()))

    if not paths:
        print("[cache-warm] no paths given", file=sys.stderr)
        return 2

    try:
        summary = asyncio.run(_run(args, paths))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-warm] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
