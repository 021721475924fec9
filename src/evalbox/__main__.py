from __future__ import annotations

import argparse
import sys
from typing import List, Optional

import uvicorn

from .api.app import create_app
from .core.settings import load_settings
from .logging import setup_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="evalbox", description="Run batches of code snippets over HTTP.")
    p.add_argument("--config", help="YAML config file (default: $EVALBOX_CONF or conf/evalbox.yaml)")
    p.add_argument("--host", help="host to listen on")
    p.add_argument("--port", type=int, help="port to listen on")
    p.add_argument("--max-concurrent-evaluations", type=int, help="maximum number of concurrent evaluations")
    p.add_argument("--max-timeout-secs", type=float, help="maximum timeout in seconds")
    p.add_argument("--max-memory-bytes", type=int, help="address space limit per program, 0 = none")
    p.add_argument("--concurrency-scope", choices=("request", "global"))
    p.add_argument("--log-level")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings(
        args.config,
        host=args.host,
        port=args.port,
        max_concurrent_evaluations=args.max_concurrent_evaluations,
        max_timeout_secs=args.max_timeout_secs,
        max_memory_bytes=args.max_memory_bytes,
        concurrency_scope=args.concurrency_scope,
        log_level=args.log_level,
    )
    log = setup_logging(settings.log_level)
    log.info(
        "starting_http_server",
        addr=f"{settings.host}:{settings.port}",
        max_concurrent_evaluations=settings.max_concurrent_evaluations,
        max_timeout_secs=settings.max_timeout_secs,
        concurrency_scope=settings.concurrency_scope,
    )
    # uvicorn owns SIGINT/SIGTERM and drains in-flight requests on shutdown
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=10,
    )
    log.info("http_server_stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
