"""
Logging Utility for the Backend

Colour-coded console output plus a small structured logger with section
separators and request/response lines.
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    SECTION = '\033[94m'    # Bright Blue
    SUBSECTION = '\033[96m' # Bright Cyan

    KEY = '\033[93m'        # Bright Yellow
    VALUE = '\033[92m'      # Bright Green
    TIMESTAMP = '\033[90m'  # Dark Gray


LEVEL_COLORS = {
    'DEBUG': Colors.DEBUG,
    'INFO': Colors.INFO,
    'WARNING': Colors.WARNING,
    'ERROR': Colors.ERROR,
    'CRITICAL': Colors.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """Formatter with colours and an icon per logger or level."""

    ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed by the last component of the logger name
    SECTION_ICONS = {
        'main': '🌐',
        'conversation_sync': '🔄',
        'lesson_resolver': '🔎',
        'turn_orchestrator': '🧭',
        'chat_service': '💬',
        'knowledge': '📚',
        'generation': '🤖',
        'store': '💾',
        'client_state': '🗂️',
        'config': '⚙️',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        icon = self.SECTION_ICONS.get(record.name.split('.')[-1], self.ICONS.get(record.levelname, '•'))
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level_color = LEVEL_COLORS.get(record.levelname, Colors.RESET)
            reset, bold, timestamp_color = Colors.RESET, Colors.BOLD, Colors.TIMESTAMP
        else:
            level_color = reset = bold = timestamp_color = ''

        formatted = (
            f"{timestamp_color}[{timestamp}]{reset} "
            f"{icon} {level_color}{record.levelname:8s}{reset} "
            f"{bold}{record.name}{reset} "
            f"| {record.getMessage()}"
        )
        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


class StructuredLogger:
    """Logger wrapper with sections and key/value payloads."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)
        self.use_colors = sys.stdout.isatty()

    def _paint(self, color: str, text: str) -> str:
        return f"{color}{text}{Colors.RESET}" if self.use_colors else text

    def _format_data(self, data: Dict[str, Any], indent: int = 2) -> str:
        lines = []
        for key, value in data.items():
            if isinstance(value, dict):
                value = self._format_data(value, indent + 2)
            elif isinstance(value, list) and len(value) > 5:
                value = f"{value[:3]} ... ({len(value)} items total)"
            lines.append(f"{' ' * indent}{self._paint(Colors.KEY, str(key))}: {self._paint(Colors.VALUE, str(value))}")
        return "{\n" + "\n".join(lines) + f"\n{' ' * (indent - 2)}}}"

    def _with_data(self, message: str, data: Optional[Dict[str, Any]]) -> str:
        return f"{message}\n{self._format_data(data)}" if data else message

    def section(self, title: str, data: Optional[Dict[str, Any]] = None):
        separator = "=" * 80
        print(f"\n{self._paint(Colors.SECTION, separator)}")
        print(self._paint(Colors.SECTION, f"📋 {title.upper()}"))
        if data:
            print(self._paint(Colors.SUBSECTION, self._format_data(data)))
        print(f"{self._paint(Colors.SECTION, separator)}\n")

    def subsection(self, title: str, data: Optional[Dict[str, Any]] = None):
        separator = "-" * 60
        print(f"\n{self._paint(Colors.SUBSECTION, separator)}")
        print(self._paint(Colors.SUBSECTION, f"  → {title}"))
        if data:
            print(self._paint(Colors.SUBSECTION, self._format_data(data)))
        print(f"{self._paint(Colors.SUBSECTION, separator)}\n")

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._with_data(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(message, data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._with_data(message, data))

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        """Log an error, with the exception's traceback when given."""
        if error is not None:
            message = f"{message} Error: {type(error).__name__}: {error}"
        self.logger.error(self._with_data(message, data), exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(f"✅ {message}", data))

    def request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(f"📥 REQUEST: {method} {path}", data))

    def response(self, status: int, path: str, duration: Optional[float] = None, data: Optional[Dict[str, Any]] = None):
        payload = dict(data or {})
        if duration is not None:
            payload["duration_ms"] = f"{duration * 1000:.2f}"
        self.logger.info(self._with_data(f"📤 RESPONSE: {status} {path}", payload))


def setup_logging(level: int = logging.INFO, use_colors: bool = True):
    """Install the coloured console handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    for noisy in ('asyncio', 'httpx', 'httpcore', 'openai', 'hpack'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name, logging.getLogger(name))
