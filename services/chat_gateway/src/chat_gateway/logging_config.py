import logging
import logging.config
import re

from .request_id import get_request_id

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_SECRET_KV_RE = re.compile(
    r"(?i)\b(authorization|token|secret|aws_secret_access_key|aws_session_token|api_key|password)\b"
    r"\s*[:=]\s*([^\s,;]+)"
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*")
_CONTENT_JSON_RE = re.compile(r'(?i)("(?:content|inputs|prompt|generated_text|generation)"\s*:\s*")[^"]*(")')
_CONTENT_KV_RE = re.compile(r"(?i)(\b(?:content|prompt)\b\s*[:=]\s*)([^\s,;]+)")


def _redact_text(text: str) -> str:
    text = _EMAIL_RE.sub("[redacted_email]", text)
    text = _CONTENT_JSON_RE.sub(r"\1[redacted]\2", text)
    text = _CONTENT_KV_RE.sub(r"\1[redacted]", text)
    text = _BEARER_RE.sub("Bearer [redacted]", text)
    text = _SECRET_KV_RE.sub(r"\1=[redacted]", text)
    return text


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


class RedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        record.msg = _redact_text(message)
        record.args = ()
        return True


_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
# boto emits request dumps at DEBUG
_QUIET_LOGGERS = ("botocore", "boto3", "urllib3")


def configure_logging(log_level: str) -> None:
    loggers = {
        name: {"handlers": ["console"], "level": log_level, "propagate": False}
        for name in _UVICORN_LOGGERS
    }
    loggers.update({name: {"level": "WARNING"} for name in _QUIET_LOGGERS})
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_id": {"()": "chat_gateway.logging_config.RequestIdFilter"},
                "redact": {"()": "chat_gateway.logging_config.RedactionFilter"},
            },
            "formatters": {
                "standard": {
                    "format": "%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s"
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "filters": ["request_id", "redact"],
                    "level": log_level,
                }
            },
            "loggers": loggers,
            "root": {"handlers": ["console"], "level": log_level},
        }
    )
