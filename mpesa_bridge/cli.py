"""Command-line entry point: serve the bridge with uvicorn."""
import argparse
from typing import List, Optional

import uvicorn

from mpesa_bridge.config import get_settings


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="mpesa-bridge",
        description="M-Pesa STK push payments for Shopify",
    )
    parser.add_argument("--host", default=settings.api_host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Bind port")
    parser.add_argument(
        "--reload", action="store_true", default=settings.debug, help="Reload on code changes"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    # The transaction table is per process, so a single worker is required.
    uvicorn.run(
        "mpesa_bridge.api.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
