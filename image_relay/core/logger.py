"""
Logging setup based on loguru.

Level policy:
- DEBUG: rotation decisions, skipped starts, ledger sweeps
- INFO:  generation outcomes, credential exhaustion, anonymous fallback
- WARNING: degraded results (failed upscale, unreadable history)
- ERROR: failures surfaced to the caller

Usage:
    from image_relay.core.logger import logger

    logger.info("message {}", value)
"""

import os
import sys

from loguru import logger

LOG_LEVEL = os.getenv("IMAGE_RELAY_LOG_LEVEL", "WARNING").upper()

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{message}</cyan>"
)

logger.remove()
logger.add(sys.stderr, format=CONSOLE_FORMAT, level=LOG_LEVEL, colorize=None)


def mask_secret(secret: str) -> str:
    """Render a secret safely for log output."""
    if not secret:
        return "<anonymous>"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


__all__ = ["logger", "mask_secret"]
