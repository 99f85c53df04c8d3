"""Structured logging via structlog, optionally teed to hourly rotating files."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import TextIO

import structlog

from .config import SSEConfig


class _TeeWriter:
    """Write structured log lines to stderr and, when given, a log file."""

    def __init__(self, log_file: TextIO | None = None) -> None:
        self._log_file = log_file

    def write(self, message: str) -> None:
        if self._log_file is not None:
            self._log_file.write(message)
            self._log_file.flush()
        sys.stderr.write(message)

    def flush(self) -> None:
        if self._log_file is not None:
            self._log_file.flush()
        sys.stderr.flush()


def setup_logging(
    log_level: str | None = None,
    log_dir: str | None = None,
    json: bool | None = None,
    config: SSEConfig | None = None,
) -> None:
    """Configure structlog for a host application embedding asyncsse.

    Explicit arguments take precedence over ``config`` (which defaults to
    SSEConfig(), i.e. the ASYNCSSE_* environment). With a log directory,
    records are also appended to ``asyncsse.jsonl`` with hourly rotation.
    """
    if config is None:
        config = SSEConfig()
    log_level = (log_level or config.log_level).upper()
    log_dir = log_dir if log_dir is not None else config.log_dir
    json = config.log_json if json is None else json

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.addHandler(stderr_handler)

    log_file = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, "asyncsse.jsonl")

        # File handler: hourly rotation, JSON lines
        file_handler = TimedRotatingFileHandler(
            filename=log_path,
            when="H",
            interval=1,
            backupCount=168,  # 7 days of hourly logs
            utc=True,
        )
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)
        log_file = open(log_path, "a")  # noqa: SIM115

    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level)
        ),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=_TeeWriter(log_file)),
        cache_logger_on_first_use=True,
    )
