import atexit
import json
import logging
import os
import pathlib
import re
import sys
import time

# Secrets that may appear in log lines: key/token pairs and the webhook key
# path segment of trigger URLs.
REDACT = re.compile(
    r"(?i)[\"']?\b(pass(word)?|token|apikey|api_key|webhook_key|secret|bearer)\b[\"']?\s*[:=]\s*[\"']?([^\"',\s]+)[\"']?"
)
REDACT_URL_KEY = re.compile(r"(/with/key/)[^/\s\"'?]+")


def redact(s: str) -> str:
    s = REDACT.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return REDACT_URL_KEY.sub(r"\1***REDACTED***", s)


_SECRET_FIELD = re.compile(
    r"(?i)^(pass(word)?|token|apikey|api_key|webhook_key|key|secret|bearer)$"
)


def _redact_fields(msg: dict) -> dict:
    """Structured variant of redact() that keeps the record valid JSON."""
    out = {}
    for k, v in msg.items():
        if _SECRET_FIELD.match(str(k)):
            out[k] = "***REDACTED***"
        elif isinstance(v, str):
            out[k] = REDACT_URL_KEY.sub(r"\1***REDACTED***", v)
        else:
            out[k] = v
    return out


class JsonRedactingHandler(logging.StreamHandler):
    """Writes dict records as one JSON object per line, strings as formatted.

    Secret-named dict fields are masked and string lines pass through
    `redact()` before they reach the stream.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = record.msg
            if isinstance(msg, dict):
                payload = {
                    "ts": time.strftime(
                        "%Y-%m-%dT%H:%M:%S", time.localtime(record.created)
                    ),
                    "level": record.levelname,
                    "logger": record.name,
                    **_redact_fields(msg),
                }
                line = json.dumps(payload, default=str)
            else:
                line = redact(self.format(record))
            self.stream.write(line + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


class JsonRedactingFileHandler(JsonRedactingHandler, logging.FileHandler):
    """File variant; closing it closes the file."""


# Structured loggers for event-style logs; children propagate to `logger`.
logger = logging.getLogger("doorbell_core")
ble_logger = logging.getLogger("doorbell_core.ble")
webhook_logger = logging.getLogger("doorbell_core.webhook")

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_FORMATTER = logging.Formatter("%(asctime)s %(levelname)s:%(name)s: %(message)s")


def _flush_all_log_handlers() -> None:
    """Flush handlers on exit, skipping streams that are already closed."""
    for h in logger.handlers:
        stream = getattr(h, "stream", None)
        if stream is not None and getattr(stream, "closed", False) is True:
            continue
        try:
            h.flush()
        except (OSError, ValueError):
            continue


atexit.register(_flush_all_log_handlers)


def _writable(path: str) -> bool:
    try:
        p = pathlib.Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "a"):
            pass
        return True
    except OSError:
        return False


def init_file_handler(path: str) -> logging.Handler:
    """File handler for `path`; stderr with a single warning when unwritable."""
    if _writable(path):
        fh = JsonRedactingFileHandler(path, encoding="utf-8")
        fh.setFormatter(_FORMATTER)
        return fh
    logger.warning({"event": "log_path_fallback", "path": path, "target": "stderr"})
    return JsonRedactingHandler(sys.stderr)


def get_log_level(override: str | None = None) -> int:
    """Resolve a numeric level.

    Checks, in order: `override`, DOORBELL_LOG_LEVEL, LOG_LEVEL. Invalid or
    missing values fall back to logging.INFO.
    """
    lvl = override or os.environ.get("DOORBELL_LOG_LEVEL") or os.environ.get(
        "LOG_LEVEL"
    )
    if not lvl:
        return logging.INFO
    return LOG_LEVEL_MAP.get(str(lvl).upper(), logging.INFO)


def setup_logging(level: str | None = None, log_path: str | None = None) -> None:
    """(Re)initialize the bridge handlers.

    Existing handlers on the `doorbell_core` logger are replaced so repeated
    calls never duplicate output.
    """
    numeric_level = get_log_level(level)
    log_path = log_path or os.environ.get("DOORBELL_LOG_PATH")

    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    console = JsonRedactingHandler(sys.stdout)
    console.setFormatter(_FORMATTER)
    logger.addHandler(console)
    if log_path:
        logger.addHandler(init_file_handler(log_path))

    logger.setLevel(numeric_level)
    for h in logger.handlers:
        h.setLevel(numeric_level)
    # Records also reach the root logger; it carries no handlers in production.
    logger.propagate = True


__all__ = [
    "JsonRedactingFileHandler",
    "JsonRedactingHandler",
    "LOG_LEVEL_MAP",
    "ble_logger",
    "get_log_level",
    "init_file_handler",
    "logger",
    "redact",
    "setup_logging",
    "webhook_logger",
]
