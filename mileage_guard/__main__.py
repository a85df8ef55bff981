"""CLI entry point: ``python -m mileage_guard serve|sweep|simulate``."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys

import structlog

from mileage_guard.log_config import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mileage_guard",
        description="Odometer ingestion, rollback detection and ledger anchoring",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Bind host (default: API_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: API_PORT)")

    sweep = sub.add_parser(
        "sweep", help="Close idle batches and send pending submissions"
    )
    sweep.add_argument(
        "--loop",
        action="store_true",
        default=False,
        help="Keep sweeping every SWEEP_INTERVAL_SECONDS until interrupted",
    )

    simulate = sub.add_parser("simulate", help="Replay a device scenario")
    simulate.add_argument("--scenario", default="normal_trip")
    simulate.add_argument("--device-id", default=None)
    simulate.add_argument("--seed", type=int, default=None)
    simulate.add_argument(
        "--url",
        default=None,
        help="POST to a running API at this base URL (default: in-process, memory store)",
    )

    for command in (serve, sweep, simulate):
        command.add_argument(
            "--dry-run",
            action="store_true",
            default=None,
            help="Never call the ledger; log submissions instead",
        )
    return parser


def main() -> None:
    args = _build_parser().parse_args()

    # Load settings from env / .env file first, then override with CLI flags.
    from mileage_guard.config import PipelineSettings

    settings = PipelineSettings()
    if args.dry_run is True:
        settings.ledger_dry_run = True

    configure_logging(settings.log_level, settings.log_format)
    logger = structlog.get_logger("mileage_guard")
    logger.info(
        "mileage_guard_starting",
        version=__import__("mileage_guard").__version__,
        command=args.command,
        dry_run=settings.ledger_dry_run,
    )

    try:
        if args.command == "serve":
            _serve(settings, args)
        elif args.command == "sweep":
            asyncio.run(_sweep(settings, loop=args.loop))
        else:
            results = asyncio.run(_simulate(settings, args))
            json.dump(results, sys.stdout, indent=2)
            sys.stdout.write("\n")
    except KeyboardInterrupt:
        logger.info("mileage_guard_interrupted")
        sys.exit(0)


def _serve(settings, args: argparse.Namespace) -> None:
    import uvicorn

    from mileage_guard.api.deps import set_runtime
    from mileage_guard.runtime import build_runtime

    set_runtime(build_runtime(settings))
    uvicorn.run(
        "mileage_guard.api.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


async def _sweep(settings, *, loop: bool) -> None:
    from mileage_guard.runtime import build_runtime

    runtime = build_runtime(settings)
    await runtime.start(background=loop)
    try:
        if loop:
            await _wait_for_shutdown()
        else:
            await runtime.sweeper.run_once()
            await runtime.submissions.drain()
    finally:
        await runtime.stop()


async def _wait_for_shutdown() -> None:
    shutdown_event = asyncio.Event()
    logger = structlog.get_logger("mileage_guard")

    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
    await shutdown_event.wait()


async def _simulate(settings, args: argparse.Namespace):
    from mileage_guard.simulation import DeviceSimulator, run_http, run_local

    simulator = DeviceSimulator(args.scenario, device_id=args.device_id, seed=args.seed)
    if args.url:
        return await run_http(simulator, args.url)

    from mileage_guard.runtime import build_runtime
    from mileage_guard.store import InMemoryBatchStore

    settings.ledger_dry_run = True
    runtime = build_runtime(settings, store=InMemoryBatchStore())
    await runtime.start(background=False)
    try:
        results = await run_local(simulator, runtime.service)
        await runtime.submissions.drain()
    finally:
        await runtime.stop()
    return results


if __name__ == "__main__":
    main()
