"""
Centralized logging configuration for the Good News backend.

- Color-coded console output for development
- Optional rotating file logs plus a separate error log
- Optional structured JSON lines for log shipping
- Helpers for stage timings and classifier call records

Nothing here runs at import time; entry points call ``setup_logging``.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class StructuredFormatter(logging.Formatter):
    """Outputs one JSON object per record."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if hasattr(record, 'extra_data'):
            log_entry['extra'] = record.extra_data
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for local runs."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        formatted = (
            f"{color}[{self.formatTime(record, '%H:%M:%S')}] {record.levelname:8} "
            f"[{record.name:28}] {record.getMessage()}{self.RESET}"
        )
        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = False,
    enable_structured_logging: bool = False
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (defaults to ./logs)
        enable_file_logging: Whether to also write rotating log files
        enable_structured_logging: Whether to emit JSON lines instead of colored text
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if enable_structured_logging:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(ColoredConsoleFormatter())
    root_logger.addHandler(console_handler)

    if enable_file_logging:
        log_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
        log_path.mkdir(parents=True, exist_ok=True)

        daily_handler = logging.handlers.TimedRotatingFileHandler(
            log_path / "goodnews.log",
            when='midnight',
            backupCount=7,
            encoding='utf-8'
        )
        daily_handler.setLevel(logging.DEBUG)
        if enable_structured_logging:
            daily_handler.setFormatter(StructuredFormatter())
        else:
            daily_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s'
            ))
        root_logger.addHandler(daily_handler)

        error_handler = logging.FileHandler(log_path / "errors.log", encoding='utf-8')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)s:%(lineno)d | %(message)s'
        ))
        root_logger.addHandler(error_handler)

    configure_pipeline_loggers(log_level)


def configure_pipeline_loggers(log_level: str) -> None:
    """Per-component levels. Chatty libraries are kept at WARNING."""
    logging.getLogger('goodnews.services.ai_service').setLevel(logging.DEBUG if str(log_level).upper() == "DEBUG" else logging.INFO)
    logging.getLogger('goodnews.services.rate_limiter').setLevel(logging.INFO)
    logging.getLogger('goodnews.services.document_store').setLevel(logging.INFO)
    logging.getLogger('goodnews.pipeline.ingestion_scheduler').setLevel(logging.INFO)

    for noisy in ('aiohttp', 'aiosqlite', 'google_genai', 'httpx', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class PerformanceTracker:
    """Context manager for tracking operation performance."""

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.debug(f"⏱️ Starting: {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            self.duration_ms = (datetime.now() - self.start_time).total_seconds() * 1000
            if exc_type:
                self.logger.error(f"💥 Failed: {self.operation_name} ({self.duration_ms:.1f}ms) - {exc_val}")
            else:
                self.logger.info(f"✅ Completed: {self.operation_name} ({self.duration_ms:.1f}ms)")
        return False


def log_pipeline_metrics(
    logger: logging.Logger,
    stage: str,
    input_count: int,
    output_count: int,
    duration_ms: float,
    **extra_data
):
    """Log structured per-stage metrics."""
    metrics = {
        'stage': stage,
        'input_count': input_count,
        'output_count': output_count,
        'duration_ms': duration_ms,
        'reduction_rate': (input_count - output_count) / input_count if input_count > 0 else 0,
        **extra_data
    }
    logger.info(f"📊 {stage}: {input_count} → {output_count} ({duration_ms:.1f}ms)", extra={'extra_data': metrics})


def log_ai_interaction(
    logger: logging.Logger,
    prompt_key: str,
    model: str,
    item_count: int,
    response_time_ms: float,
    success: bool,
    **extra_data
):
    """Log classifier calls for monitoring."""
    interaction = {
        'prompt_key': prompt_key,
        'model': model,
        'item_count': item_count,
        'response_time_ms': response_time_ms,
        'success': success,
        **extra_data
    }
    status = "✅" if success else "❌"
    logger.info(
        f"{status} AI: {prompt_key} | {model} | {item_count} items | {response_time_ms:.1f}ms",
        extra={'extra_data': interaction}
    )
