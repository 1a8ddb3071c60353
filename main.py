#!/usr/bin/env python3
"""
WhatsApp bridge worker entry point.

Usage:
    python main.py                          # config/settings.yaml + env
    python main.py --config prod.yaml       # explicit settings file
    python main.py --log-level debug
"""
import argparse
import asyncio
import sys

import structlog

from config.settings import load_settings
from core.worker import Worker
from utils.logger import configure_logging

logger = structlog.get_logger()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="WhatsApp bridge worker")
    parser.add_argument("--config", help="Path to the settings YAML file")
    parser.add_argument("--log-level", help="Override the configured log level")
    return parser.parse_args(argv)


async def run(settings) -> int:
    worker = Worker(settings)
    return await worker.run()


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = load_settings(args.config)
    if args.log_level:
        settings.logging.level = args.log_level
    configure_logging(settings.logging, production=settings.server.environment == "production")

    logger.info("worker_booting", name=settings.app_name, version=settings.version)
    try:
        return asyncio.run(run(settings))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
