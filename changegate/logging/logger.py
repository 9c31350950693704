"""
Structured Logging

JSON log entries for changegate components. Every entry names the component
that emitted it; lifecycle entries also carry the change they concern
(change_id, kind, scope_id, status, and run_id / hop_index for pipeline hops)
so a change can be followed through the logs of every worker.
"""

import logging
import logging.config
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import yaml


class StructuredFormatter(logging.Formatter):
    """Formatter that emits one JSON object per log record"""

    def __init__(self, component_id: str = "changegate"):
        super().__init__()
        self.component_id = component_id

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "component_id": getattr(record, 'component_id', self.component_id),
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class ComponentLogger(logging.LoggerAdapter):
    """
    Logger that stamps every record with the emitting component.

    Per-call fields are passed the usual way, extra={'extra_fields': {...}};
    change_fields() builds them for a change.
    """

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        extra['component_id'] = self.extra['component_id']
        kwargs['extra'] = extra
        return msg, kwargs


def change_fields(change, **fields) -> Dict[str, Any]:
    """
    Build the extra= argument describing a change.

    Args:
        change: Change the log entry is about
        **fields: Additional fields (attempt, reason, ...)

    Example:
        >>> logger.info("Applied change", extra=change_fields(change, attempt=2))
    """
    data: Dict[str, Any] = {
        'change_id': change.change_id,
        'kind': change.kind.value,
        'scope_id': change.scope_id,
        'status': change.status.value
    }
    if change.run_id:
        data['run_id'] = change.run_id
        data['hop_index'] = change.hop_index
    if change.linked_change_id:
        data['linked_change_id'] = change.linked_change_id

    data.update(fields)
    return {'extra_fields': data}


def get_logger(name: str, component_id: str = "changegate", level: Optional[int] = None) -> ComponentLogger:
    """
    Get a structured logger for a changegate component.

    Records propagate to whatever configure_logging() set up. When nothing
    is configured yet, a structured console handler is attached so output
    is not lost.

    Args:
        name: Logger name (typically module name)
        component_id: Identifier of the process/component emitting the logs
        level: Logging level (inherited if omitted)

    Returns:
        Logger adapter stamping component_id on every record

    Example:
        >>> logger = get_logger(__name__, component_id="worker-1")
        >>> logger.info("Change applied", extra={'extra_fields': {'change_id': 'chg-001'}})
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)

    if not logger.hasHandlers():
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(StructuredFormatter(component_id))
        logger.addHandler(console_handler)
        logger.propagate = False

    return ComponentLogger(logger, {'component_id': component_id})


def _load_config(config_path: str) -> Dict[str, Any]:
    with open(config_path, "r", encoding="utf-8") as handle:
        config = yaml.safe_load(handle)

    if not isinstance(config, dict) or not config:
        raise ValueError(f"{config_path} holds no logging configuration")

    # Rotating file handlers need their directory to exist
    for handler in config.get("handlers", {}).values():
        directory = os.path.dirname(handler.get("filename") or "")
        if directory:
            os.makedirs(directory, exist_ok=True)

    return config


def configure_logging(config_path: Optional[str] = None, level: Optional[str] = None) -> bool:
    """
    Set up logging for the changegate package.

    A dictConfig YAML file is used when given and readable. Otherwise the
    "changegate" logger gets a structured console handler at INFO. Either
    way, a level name (or CHANGEGATE_LOG_LEVEL) overrides the level of the
    "changegate" logger.

    Args:
        config_path: Path to YAML logging config (logging.config.dictConfig schema)
        level: Level name such as "DEBUG"; defaults to CHANGEGATE_LOG_LEVEL

    Returns:
        True if the YAML config was loaded, False if the fallback was used

    Raises:
        ValueError: Unknown level name
    """
    package_logger = logging.getLogger("changegate")
    level = (level or os.environ.get("CHANGEGATE_LOG_LEVEL") or "").upper()
    if level and not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"Unknown log level: {level}")

    loaded = False
    problem = None
    if config_path and os.path.isfile(config_path):
        try:
            logging.config.dictConfig(_load_config(config_path))
            loaded = True
        except (OSError, ValueError, yaml.YAMLError) as e:
            problem = e
    elif config_path:
        problem = f"{config_path} not found"

    if not loaded and not package_logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(StructuredFormatter())
        package_logger.addHandler(console_handler)
        package_logger.setLevel(logging.INFO)

    if level:
        package_logger.setLevel(level)

    if problem is not None:
        package_logger.warning(f"Using console logging, could not load {config_path}: {problem}")

    return loaded
