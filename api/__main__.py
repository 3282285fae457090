"""Run the control API server."""

import argparse
import logging
import os
import sys

import uvicorn

from .config import config

OUR_LOGGERS = ("api", "controlplane")
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn", "uvicorn.access", "docker", "urllib3", "sse_starlette")


def setup_logging(debug: bool = False):
    """Log to stdout; DEBUG for our packages when ``debug`` is set."""
    if debug:
        fmt = "%(asctime)s.%(msecs)03d %(levelname)-5s [%(name)s:%(lineno)d] %(message)s"
    else:
        fmt = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"
    logging.basicConfig(level=logging.INFO, format=fmt, datefmt="%H:%M:%S", stream=sys.stdout, force=True)

    for name in OUR_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.INFO)
    # Even in debug mode
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="LLM backend control plane")
    parser.add_argument("--host", default=config.host, help=f"Bind address (default: {config.host})")
    parser.add_argument("--port", type=int, default=config.port, help=f"Bind port (default: {config.port})")
    parser.add_argument("--debug", "-d", action="store_true", help="Debug logging for api and controlplane")
    args = parser.parse_args(argv)
    args.debug = args.debug or os.environ.get("DEBUG", "").lower() in ("1", "true", "yes")
    return args


def main(argv: list[str] | None = None):
    args = parse_args(argv)
    setup_logging(debug=args.debug)
    logging.getLogger("api").info(f"Starting control API on http://{args.host}:{args.port}")

    uvicorn.run("api.app:app", host=args.host, port=args.port, log_level="warning", timeout_graceful_shutdown=3)


if __name__ == "__main__":
    main()
