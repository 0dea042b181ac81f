"""
Run the sentiment serving API with uvicorn.

Usage:
    $ python -m sentiment_serving
    $ sentiment-serving --port 8080
"""

import argparse
import logging
import sys

import uvicorn

from .config import get_config
from .logger import setup_logging
from .serving.server import create_app

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Serve sentiment predictions over HTTP")
    parser.add_argument("--host", help="Bind address (overrides HOST)")
    parser.add_argument("--port", type=int, help="Bind port (overrides PORT)")
    parser.add_argument("--model-uri", help="Model archive URL or path (overrides MODEL_URI)")
    args = parser.parse_args(argv)

    try:
        config = get_config()
        if args.host:
            config.HOST = args.host
        if args.port:
            config.PORT = args.port
        if args.model_uri:
            config.MODEL_URI = args.model_uri
        config.validate()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(config.LOG_LEVEL, config.LOG_FORMAT)

    logger.info(f"Starting server on {config.HOST}:{config.PORT}")
    uvicorn.run(
        create_app(config),
        host=config.HOST,
        port=config.PORT,
        workers=1,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
