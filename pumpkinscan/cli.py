"""CLI entrypoint for pumpkinscan."""
from __future__ import annotations
import argparse
import asyncio
import signal
import sys
import uvicorn
import httpx
from dotenv import load_dotenv
from .core.config_loader import load_settings
from .core.dispatcher import build_client, dispatcher_from_address, random_dispatcher, random_sticky_dispatcher
from .core.errors import PersistenceError, ScanError
from .core.logging import logger, setup_logging
from .core.orchestrator import run_scan
from .server import create_app


def build_parser():
    p = argparse.ArgumentParser(prog="pumpkinscan", description="IP-rotating canvas tile scanner")
    sub = p.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Scan the canvas forever (or once with --once)")
    run.add_argument("--config", help="Path to YAML settings file")
    run.add_argument("--cidr", help="Owned address block for outbound requests, e.g. 2001:db8::/48")
    run.add_argument("--workers", type=int, help="Number of worker processes (default min(cpu, 8))")
    run.add_argument("--concurrency", type=int, help="In-flight tile checks per worker")
    run.add_argument("--store", dest="store_path", help="Path of the pumpkin JSON store")
    run.add_argument("--once", action="store_true", help="Run a single pass and exit")
    run.add_argument("--log-file", help="Also write logs to this file (daily rotation)")

    serve = sub.add_parser("serve", help="Serve the store read-only over HTTP")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--store", dest="store_path", help="Path of the pumpkin JSON store")

    probe = sub.add_parser("probe", help="GET a URL from a chosen or random source address")
    probe.add_argument("url")
    src = probe.add_mutually_exclusive_group(required=True)
    src.add_argument("--source", help="Source address to bind")
    src.add_argument("--cidr", help="Pick a random source address from this block")
    probe.add_argument(
        "--sticky-bits",
        type=int,
        help="With --cidr: keep one anchor address and only rotate its lowest N bits",
    )
    probe.add_argument("--timeout", type=float, default=10.0)
    return p


async def _scan(settings, max_passes):
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGTERM, task.cancel)
    return await run_scan(settings, max_passes=max_passes)


def cmd_run(args) -> int:
    setup_logging(log_file=args.log_file)
    try:
        settings = load_settings(
            path=args.config,
            overrides={
                "cidr": args.cidr,
                "workers": args.workers,
                "concurrency": args.concurrency,
                "store_path": args.store_path,
            },
        )
        asyncio.run(_scan(settings, 1 if args.once else None))
    except PersistenceError as e:
        logger.critical(f"stopping: {e}")
        return 2
    except ScanError as e:
        logger.error(str(e))
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("scan stopped")
        return 130
    finally:
        logger.complete()
    return 0


def cmd_serve(args) -> int:
    setup_logging()
    uvicorn.run(create_app(args.store_path), host=args.host, port=args.port)
    return 0


async def _probe(args) -> httpx.Response:
    if args.source:
        transport = dispatcher_from_address(args.source)
    elif args.sticky_bits is not None:
        transport = random_sticky_dispatcher(args.cidr, args.sticky_bits)
    else:
        transport = random_dispatcher(args.cidr)
    async with build_client(transport, timeout=args.timeout) as client:
        return await client.get(args.url)


def cmd_probe(args) -> int:
    setup_logging()
    try:
        resp = asyncio.run(_probe(args))
    except (ScanError, httpx.HTTPError) as e:
        logger.error(f"probe failed: {e!r}")
        return 1
    print(f"{resp.status_code} {resp.reason_phrase} ({len(resp.content)} bytes)")
    return 0 if resp.is_success else 1


def main(argv=None):
    # PUMPKINSCAN_* settings may also come from a .env file
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "run":
        return cmd_run(args)
    if args.command == "serve":
        return cmd_serve(args)
    if args.command == "probe":
        return cmd_probe(args)
    parser.print_help()
    return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
