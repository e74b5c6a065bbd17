#!/usr/bin/env python3
"""
Run the chatforge HTTP API.

    python -m chatforge.core --config chatforge.yaml
    python -m chatforge.core --backend-url http://gpu-box:11434 --model mistral
    chatforge-server --port 9000 --log-level debug
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import uvicorn

from .config import load_settings
from .errors import ConfigurationError
from .http_server import create_app

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatforge-server",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Interface to listen on (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8100, help="TCP port (default: 8100)")
    parser.add_argument("--config", type=Path, help="YAML settings file; built-in defaults when omitted")
    parser.add_argument("--backend-url", help="Generation backend base URL, overrides the settings file")
    parser.add_argument("--model", help="Default model name, overrides the settings file")
    parser.add_argument(
        "--log-level",
        choices=["critical", "error", "warning", "info", "debug"],
        default="info",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    if args.backend_url:
        settings = replace(settings, backend_url=args.backend_url.rstrip("/"))
    if args.model:
        settings = replace(settings, default_model=args.model)

    app = create_app(args.config, settings=settings)
    logger.info("Serving on %s:%d, backend %s", args.host, args.port, settings.backend_url)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    sys.exit(main())
