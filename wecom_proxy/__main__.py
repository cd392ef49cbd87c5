"""
Run the relay under uvicorn.

    python -m wecom_proxy [port] [--host HOST]

uvicorn handles SIGTERM/SIGINT: it stops accepting connections, waits up to
SHUTDOWN_GRACE_SECONDS for in-flight requests, runs the lifespan shutdown and
exits with status 0.
"""

import argparse
import importlib
import os

import uvicorn

from wecom_proxy import vars as proxy_vars
from wecom_proxy.vars import LISTEN_HOST, LOG_LEVEL, PROXY_PORT, SHUTDOWN_GRACE_SECONDS


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Relay /cgi-bin/ API calls to a fixed upstream host"
    )
    parser.add_argument(
        "port",
        nargs="?",
        type=int,
        default=PROXY_PORT,
        help=f"Listen port (default: PROXY_PORT or {PROXY_PORT})",
    )
    parser.add_argument(
        "--host",
        default=LISTEN_HOST,
        help=f"Bind address (default: LISTEN_HOST or {LISTEN_HOST})",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    # The app reads its configuration on import; the CLI values must be in
    # place before uvicorn imports it
    os.environ["PROXY_PORT"] = str(args.port)
    os.environ["LISTEN_HOST"] = args.host
    importlib.reload(proxy_vars)
    uvicorn.run(
        "wecom_proxy.server:app",
        host=args.host,
        port=args.port,
        log_level=LOG_LEVEL,
        timeout_graceful_shutdown=SHUTDOWN_GRACE_SECONDS,
    )


if __name__ == "__main__":
    main()
