"""
Infrastructure package: logging.
"""

from pairbot.infra.logging_cfg import build_logger, log_event

__all__ = ["build_logger", "log_event"]
