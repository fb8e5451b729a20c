#!/usr/bin/env python3
"""
Diagnostic Logging for the S3 VPC Endpoint Provisioner

Sets up the root logger once per process and records caller identity and
environment details that help when a provider call is rejected.
"""

import logging
import os
import sys
import platform
from typing import Optional

from . import __version__

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("diagnostic")


def configure_logging(level: str = "WARNING", log_file: Optional[str] = None):
    """Configure the root logger with a stderr handler and an optional file handler."""
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    # botocore is noisy at DEBUG and only useful when chasing wire problems
    if level.upper() != "DEBUG":
        logging.getLogger("botocore").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def log_system_info(settings):
    """Log the runtime and target account context for a run."""
    logger.info("=" * 60)
    logger.info("RUN DIAGNOSTICS")
    logger.info("=" * 60)
    logger.info(f"Provisioner Version: {__version__}")
    logger.info(f"Platform: {platform.platform()}")
    logger.info(f"Python Version: {sys.version.split()[0]}")
    logger.info(f"Working Directory: {os.getcwd()}")
    logger.info(f"Project: {settings.project_id} ({settings.project_name})")
    logger.info(f"Region: {settings.region}")
    if settings.endpoint_url:
        logger.info(f"Provider Endpoint Override: {settings.endpoint_url}")
    logger.info(f"State File: {settings.state_path}")
    logger.info(
        f"Environment Variables: {[k for k in os.environ.keys() if k.startswith('AWS_') and 'SECRET' not in k and 'TOKEN' not in k]}"
    )
    logger.info("=" * 60)
