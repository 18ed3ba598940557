import json
import logging
import re
import sys
from datetime import datetime, timezone

try:
    from rich.logging import RichHandler

    RICH_AVAILABLE = True
except ImportError:
    RICH_AVAILABLE = False

# Loggers of the database stack. They follow the configured level but are
# never more verbose than WARNING.
DRIVER_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "pyodbc")

# ODBC connection strings carry passwords even when none was registered
_DSN_PASSWORD = re.compile(r"(PWD=)[^;]*", re.IGNORECASE)

REDACTED = "[REDACTED]"


class StructuredLogger:
    """Logger that supports both human-readable and JSON output with secret redaction."""

    def __init__(self, structured: bool = False, level: str = "INFO"):
        self._secrets = set()
        self.logger = logging.getLogger("sqlbulk")
        self.configure(structured, level)

    def configure(self, structured: bool, level: str) -> None:
        """Switch output format and level in place; registered secrets are kept."""
        self.structured = structured
        self.level = getattr(logging, level.upper(), logging.INFO)

        if not self.structured and RICH_AVAILABLE:
            logging.basicConfig(
                level=self.level,
                format="%(message)s",
                datefmt="[%X]",
                handlers=[RichHandler(rich_tracebacks=True, markup=False, show_path=False)],
            )
        else:
            logging.basicConfig(level=self.level, format="%(message)s", stream=sys.stdout)

        self.logger.setLevel(self.level)
        driver_level = max(self.level, logging.WARNING)
        for logger_name in DRIVER_LOGGERS:
            logging.getLogger(logger_name).setLevel(driver_level)

    def register_secret(self, secret: str):
        """Register a secret string to be redacted from logs."""
        if secret and isinstance(secret, str) and len(secret.strip()) > 0:
            self._secrets.add(secret)

    def _redact(self, text: str) -> str:
        """Redact registered secrets and DSN passwords from text."""
        if not text:
            return text

        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return _DSN_PASSWORD.sub(lambda m: m.group(1) + REDACTED, text)

    def info(self, message: str, **kwargs):
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log("DEBUG", message, **kwargs)

    def _log(self, level: str, message: str, **kwargs):
        level_val = getattr(logging, level, logging.INFO)
        if level_val < self.level:
            return

        message = self._redact(str(message))
        context = {k: self._redact(v) if isinstance(v, str) else v for k, v in kwargs.items()}

        if self.structured:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "message": message,
                **context,
            }
            print(json.dumps(entry, default=str))
            return

        if context:
            message = f"{message} ({', '.join(f'{k}={v}' for k, v in context.items())})"
        if level != "INFO":
            message = f"[{'WARN' if level == 'WARNING' else level}] {message}"
        self.logger.log(level_val, message)


# Shared by every module; configure_logging updates it in place
logger = StructuredLogger()


def configure_logging(structured: bool, level: str):
    """Configure the global logger."""
    logger.configure(structured, level)
