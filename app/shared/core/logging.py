import re
import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings

_SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "signature",
    "authorization",
    "api_key",
    "apikey",
    "access_token",
    "client_secret",
    "private_key",
    "webhook_secret",
    "raw_signature",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key", "_signature")
_SENSITIVE_FRAGMENTS = ("authorization", "secret", "signature", "apikey", "api_key")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    if key_norm.endswith(_SENSITIVE_SUFFIXES):
        return True
    tokens = [t for t in re.split(r"[^a-z0-9]+", key_norm) if t]
    if any(t in _SENSITIVE_FIELDS for t in tokens):
        return True
    return any(fragment in key_norm for fragment in _SENSITIVE_FRAGMENTS)


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact signing secrets, signature headers and e-mail addresses.
    Webhook secrets and raw signature values must never reach log sinks.
    """

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, (list, tuple)):
            return [redact_recursive(item) for item in data]
        elif isinstance(data, str):
            return _EMAIL_RE.sub("[EMAIL_REDACTED]", data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def build_processors(debug: bool) -> list[Any]:
    """
    Processor chain for structlog. Exceptions are rendered before redaction,
    without frame locals, so a secret held in a local never reaches a sink.
    """
    if debug:
        exception_processor: Any = structlog.processors.format_exc_info
        renderer: Any = structlog.dev.ConsoleRenderer()
    else:
        exception_processor = structlog.processors.ExceptionRenderer(
            structlog.tracebacks.ExceptionDictTransformer(show_locals=False)
        )
        renderer = structlog.processors.JSONRenderer()

    return [
        structlog.contextvars.merge_contextvars,  # request_id / provider / event_id
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        exception_processor,
        secret_redactor,
        renderer,
    ]


def setup_logging() -> None:
    settings = get_settings()
    min_level = logging.DEBUG if settings.DEBUG else logging.INFO

    structlog.configure(
        processors=cast(Any, build_processors(settings.DEBUG)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Cached loggers would bypass structlog.testing.capture_logs in tests.
        cache_logger_on_first_use=not settings.TESTING,
    )

    # Route stdlib logging (uvicorn, sqlalchemy) to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def audit_log(
    event: str,
    tenant_id: int | None,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Standardized helper for billing audit events emitted on behalf of a provider.
    """
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        metadata=details or {},
    )
