"""
changegate Logging Module

Provides structured JSON logging.
"""

from .logger import (
    ComponentLogger, StructuredFormatter, change_fields, configure_logging, get_logger
)

__all__ = ['ComponentLogger', 'StructuredFormatter', 'change_fields', 'configure_logging', 'get_logger']
