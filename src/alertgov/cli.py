from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from alertgov.config import Settings, load_settings
from alertgov.engine import build_engine
from alertgov.log import setup_json_logging
from alertgov.providers import StaticMetricsProvider
from alertgov.types import AggregatedMetrics


def _print(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _load_metrics(path: Optional[Path]) -> Optional[AggregatedMetrics]:
    if path is None:
        return None
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return AggregatedMetrics.from_mapping(data)


async def _run_cycles(settings: Settings, n: int, metrics: Optional[AggregatedMetrics]) -> List[Dict[str, Any]]:
    provider = StaticMetricsProvider(metrics) if metrics is not None else None
    engine = build_engine(settings, provider=provider)
    try:
        await engine.runner.hydrate()
        out = []
        for _ in range(n):
            result = await engine.runner.run_once()
            await engine.runner.drain()
            if result is not None:
                out.append({"cycle": engine.runner.cycle, **result.to_dict()})
        return out
    finally:
        engine.close()


async def _serve(settings: Settings, host: str, port: int) -> None:
    import uvicorn

    from alertgov.api.main import create_app

    config = uvicorn.Config(create_app(settings), host=host, port=port, log_config=None)
    await uvicorn.Server(config).serve()


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="alertgov", description="Alert governance and adaptive suppression")
    p.add_argument("--config", type=Path, default=None, help="YAML settings file")
    p.add_argument("--log-level", default="INFO")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    cyc = sub.add_parser("cycle", help="Run N adaptive cycles and print the results")
    cyc.add_argument("n", type=int, nargs="?", default=1)
    cyc.add_argument("--metrics", type=Path, default=None, help="YAML/JSON with fixed aggregated metrics")

    run = sub.add_parser("run", help="Serve the API with the runner in the background")
    run.add_argument("--host", default="0.0.0.0")
    run.add_argument("--port", type=int, default=8000)

    purge = sub.add_parser("purge-alerts", help="Delete governance alerts older than N days")
    purge.add_argument("--days", type=int, default=None)

    sub.add_parser("show-config", help="Print effective settings")

    hist = sub.add_parser("history", help="Print persisted weight history")
    hist.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)
    setup_json_logging(args.log_level.upper())
    settings = load_settings(args.config)

    if args.command == "show-config":
        _print(settings.to_dict())
        return 0

    if args.command == "cycle":
        if args.n < 1:
            p.error("n must be >= 1")
        _print(asyncio.run(_run_cycles(settings, args.n, _load_metrics(args.metrics))))
        return 0

    if args.command == "run":
        asyncio.run(_serve(settings, args.host, args.port))
        return 0

    engine = build_engine(settings)
    try:
        if args.command == "init-db":
            if not engine.database.is_configured:
                print("No database configured (set ALERTGOV_DB_URL); nothing to initialize")
                return 1
            print(f"Initialized tables at {engine.database.engine.url.render_as_string(hide_password=True)}")
            return 0
        if args.command == "purge-alerts":
            removed = engine.alert_store.purge_older_than(args.days)
            _print({"removed": removed})
            return 0
        if args.command == "history":
            r = engine.persistence.list_weights_history(limit=args.limit)
            _print({**r.to_dict(), "rows": r.rows})
            return 0 if r.ok or r.skipped else 1
    finally:
        engine.close()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
