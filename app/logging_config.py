"""
Structured logging for the SSO service.

  - JSON lines in production / staging, readable lines in development
  - request / tenant / user ids pulled from context variables
  - credentials and federated tokens never reach the log sink
  - ``salesintel.security`` carries trust-boundary rejections and is tagged
    ``"security": true`` in JSON output
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from app.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="-")
user_id_ctx: ContextVar[str] = ContextVar("user_id", default="-")

SECURITY_LOGGER_NAME = "salesintel.security"

NOISY_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "asyncio", "multipart")


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


# ═══════════════════════════════════════════
#  Redaction
# ═══════════════════════════════════════════

# Keys whose values are credentials or IdP artefacts (quoted JSON / kwargs / query style)
SENSITIVE_KEYS = (
    "password",
    "client_secret",
    "code_verifier",
    "id_token",
    "access_token",
    "refresh_token",
    "SAMLResponse",
    "authorization",
)

_QUOTED_RE = re.compile(
    r'("?(?:%s)"?\s*[:=]\s*)"[^"]*"' % "|".join(SENSITIVE_KEYS), re.I,
)
_QUERY_RE = re.compile(r"\b((?:%s)=)[^&\s\"']+" % "|".join(SENSITIVE_KEYS), re.I)
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.I)
_EMAIL_RE = re.compile(r"([a-zA-Z0-9._%+-]+)@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")


def _mask_email(match: re.Match) -> str:
    local, domain = match.group(1), match.group(2)
    if len(local) <= 2:
        return f"{local[0]}***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


def mask_pii(text: str) -> str:
    """Redact secrets and mask email local parts in a log message."""
    text = _QUOTED_RE.sub(r'\1"***"', text)
    text = _QUERY_RE.sub(r"\1***", text)
    text = _BEARER_RE.sub(r"\1***", text)
    return _EMAIL_RE.sub(_mask_email, text)


# ═══════════════════════════════════════════
#  Formatters
# ═══════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S.000Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_pii(record.getMessage()),
            "request_id": request_id_ctx.get(),
            "tenant_id": tenant_id_ctx.get(),
            "user_id": user_id_ctx.get(),
            "event": getattr(record, "event", None),
        }
        if record.name == SECURITY_LOGGER_NAME:
            entry["security"] = True
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = mask_pii(self.formatException(record.exc_info))

        entry = {k: v for k, v in entry.items() if v and v != "-"}
        return json.dumps(entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-22s | [%(request_id)s %(tenant_id)s] %(message)s"

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = request_id_ctx.get()
        record.tenant_id = tenant_id_ctx.get()
        return mask_pii(super().format(record))


# ═══════════════════════════════════════════
#  Setup
# ═══════════════════════════════════════════

def setup_logging() -> None:
    """Install the root handler. Safe to call more than once."""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.is_production or settings.is_staging:
        handler.setFormatter(JSONFormatter())
        root.setLevel(logging.INFO)
    else:
        handler.setFormatter(HumanFormatter(HumanFormatter.FORMAT, datefmt="%H:%M:%S"))
        root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    # Security events stay visible even if the root level is raised
    logging.getLogger(SECURITY_LOGGER_NAME).setLevel(logging.INFO)
