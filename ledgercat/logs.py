import logging
import os
import json
import pathlib
from logging import Handler, Logger, handlers
from typing import Any, Dict, Optional, Union

import ray

from ledgercat.constants import (
    BYTES_PER_MEBIBYTE,
    LEDGERCAT_SYS_LOG_LEVEL,
    LEDGERCAT_SYS_LOG_DIR,
    LEDGERCAT_SYS_INFO_LOG_BASE_FILE_NAME,
    LEDGERCAT_SYS_DEBUG_LOG_BASE_FILE_NAME,
    LEDGERCAT_LOGGER_CONTEXT,
)

DEFAULT_LOG_FORMAT = {
    "level": "levelname",
    "message": "message",
    "loggerName": "name",
    "processID": "process",
    "threadName": "threadName",
    "timestamp": "asctime",
    "filename": "filename",
    "lineno": "lineno",
}
DEFAULT_MAX_BYTES_PER_LOG = 256 * BYTES_PER_MEBIBYTE


def _env_context() -> Dict[str, Any]:
    if LEDGERCAT_LOGGER_CONTEXT is None:
        return {}
    try:
        return json.loads(LEDGERCAT_LOGGER_CONTEXT)
    except json.JSONDecodeError:
        return {"raw_context": LEDGERCAT_LOGGER_CONTEXT}


def _ray_context() -> Optional[Dict[str, Any]]:
    if not ray.is_initialized():
        return None
    runtime_ctx = ray.get_runtime_context()
    context = {
        "job_id": runtime_ctx.get_job_id(),
        "node_id": runtime_ctx.get_node_id(),
        "worker_id": runtime_ctx.get_worker_id(),
    }
    # only set inside Ray tasks
    task_id = runtime_ctx.get_task_id()
    if task_id is not None:
        context["task_id"] = task_id
    return context


class JsonFormatter(logging.Formatter):
    """
    Writes each log record as one JSON object. Records logged while Ray is
    initialized carry the job, node and worker IDs (plus the task ID inside a
    Ray task) under "ray_runtime_context". Context given at construction
    time or through LEDGERCAT_LOGGER_CONTEXT is added under
    "additional_context".

    @param dict fmt_dict: JSON key to LogRecord attribute. Defaults to {"message": "message"}.
    @param dict context_kwargs: Static context added to every record.
    """

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def __init__(
        self,
        fmt_dict: Optional[Dict[str, str]] = None,
        context_kwargs: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.fmt_dict = fmt_dict if fmt_dict is not None else {"message": "message"}
        self.additional_context = {**(context_kwargs or {}), **_env_context()}

    def usesTime(self) -> bool:
        return "asctime" in self.fmt_dict.values()

    def formatMessage(self, record) -> dict:
        """
        Returns the configured LogRecord attributes as a dictionary. Raises
        KeyError for attributes the record does not have.
        """
        return {
            fmt_key: record.__dict__[fmt_val]
            for fmt_key, fmt_val in self.fmt_dict.items()
        }

    def format(self, record) -> str:
        record.message = record.getMessage()
        if self.usesTime():
            record.asctime = self.formatTime(record, self.datefmt)
        message_dict = self.formatMessage(record)
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message_dict["exc_info"] = record.exc_text
        if record.stack_info:
            message_dict["stack_info"] = self.formatStack(record.stack_info)
        ray_context = _ray_context()
        if ray_context is not None:
            message_dict["ray_runtime_context"] = ray_context
        if self.additional_context:
            message_dict["additional_context"] = self.additional_context
        return json.dumps(message_dict, default=str)


def _has_file_handler(logger: Logger, log_file_path: str) -> bool:
    norm_path = os.path.normpath(log_file_path)
    return any(
        isinstance(handler, logging.FileHandler)
        and os.path.normpath(handler.baseFilename) == norm_path
        for handler in logger.handlers
    )


def _add_json_file_handler(
    logger: Logger,
    log_file_path: str,
    level: int,
    context_kwargs: Optional[Dict[str, Any]],
) -> None:
    if _has_file_handler(logger, log_file_path):
        return
    pathlib.Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)
    handler: Handler = handlers.RotatingFileHandler(
        log_file_path,
        maxBytes=DEFAULT_MAX_BYTES_PER_LOG,
    )
    handler.setFormatter(JsonFormatter(DEFAULT_LOG_FORMAT, context_kwargs))
    handler.setLevel(level)
    logger.addHandler(handler)


def configure_ledgercat_logger(
    logger: Logger,
    level: Union[int, str, None] = None,
    context_kwargs: Optional[Dict[str, Any]] = None,
) -> Logger:
    """
    Attaches rotating JSON file handlers under LEDGERCAT_SYS_LOG_DIR to the
    given logger. Records at INFO and above go to the info log. At DEBUG
    level, all records also go to a separate debug log. Calling this again
    for the same logger does not add duplicate handlers.
    """
    if level is None:
        level = LEDGERCAT_SYS_LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.propagate = False
    logger.setLevel(logging.DEBUG)
    if level <= logging.DEBUG:
        _add_json_file_handler(
            logger,
            os.path.join(LEDGERCAT_SYS_LOG_DIR, LEDGERCAT_SYS_DEBUG_LOG_BASE_FILE_NAME),
            logging.DEBUG,
            context_kwargs,
        )
    _add_json_file_handler(
        logger,
        os.path.join(LEDGERCAT_SYS_LOG_DIR, LEDGERCAT_SYS_INFO_LOG_BASE_FILE_NAME),
        max(level, logging.INFO),
        context_kwargs,
    )
    return logger
