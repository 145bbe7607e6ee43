"""
Audit trail for the OAuth authorization server.

Every security decision (client registration, authorization grant or denial,
failed client authentication, token issuance, rejected grant, revocation)
becomes one ``AUDIT: {json}`` line on stdout, emitted through the dedicated
``oauth.audit`` logger so it can be routed apart from application logs.

Credential values never reach the trail. Event keys naming a code, token,
secret or verifier are dropped, and error descriptions that appear to embed
one are replaced wholesale.

Environment:
- AUDIT_LOG_ENABLED: "false" turns the trail off (default: true)
- AUDIT_LOG_LEVEL: CRITICAL, HIGH, MEDIUM or LOW (default: MEDIUM)
- AUDIT_LOG_INCLUDE_LOW: emit LOW events too (default: false)
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

AUDIT_LOGGER_NAME = "oauth.audit"
MAX_DESCRIPTION_LENGTH = 500
REDACTED_DESCRIPTION = "Error description redacted (may contain credentials)"

SENSITIVE_FIELDS = frozenset({
    "code",
    "code_verifier",
    "code_challenge",
    "access_token",
    "refresh_token",
    "token",
    "client_secret",
    "secret",
    "password",
    "authorization",
})

_CREDENTIAL_IN_TEXT = re.compile(
    r"\b(?:client_secret|secret|password|code_verifier|access_token|refresh_token|token|code)\s*="
    r"|\b(?:bearer|basic)\s+\S"
    r"|\bauthorization\s*:",
    re.IGNORECASE
)


class AuditSeverity(Enum):
    """Audit severities, valued as the logging level each is emitted at."""
    CRITICAL = logging.CRITICAL  # Revocation
    HIGH = logging.ERROR         # Client registration, token issuance
    MEDIUM = logging.WARNING     # Authorization decisions, rejected grants, failed client auth
    LOW = logging.INFO


class AuditAction(Enum):
    CREATE = "create"
    READ = "read"
    DELETE = "delete"
    AUTH = "auth"


def severity_enabled(severity: AuditSeverity, min_severity: AuditSeverity, include_low: bool) -> bool:
    """LOW is opt-in; everything else compares against the configured floor."""
    if severity is AuditSeverity.LOW:
        return include_low
    return severity.value >= min_severity.value


def strip_sensitive_fields(event: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``event`` without credential-bearing keys."""
    return {k: v for k, v in event.items() if k.lower() not in SENSITIVE_FIELDS}


def redact_description(description: str) -> str:
    """Cap the length of an error description and drop it if it quotes a credential."""
    if _CREDENTIAL_IN_TEXT.search(description):
        return REDACTED_DESCRIPTION
    if len(description) > MAX_DESCRIPTION_LENGTH:
        return description[:MAX_DESCRIPTION_LENGTH - 3] + "..."
    return description


class AuditLogFilter(logging.Filter):
    """Drops audit records below the configured severity; other records pass."""

    def __init__(self, min_severity: AuditSeverity, include_low: bool = False):
        super().__init__()
        self.min_severity = min_severity
        self.include_low = include_low

    def filter(self, record: logging.LogRecord) -> bool:
        severity = getattr(record, 'audit_severity', None)
        if severity is None:
            return True
        return severity_enabled(severity, self.min_severity, self.include_low)


class AuditLogFormatter(logging.Formatter):
    """Renders ``record.audit_event`` as ``AUDIT: {json}`` with sorted keys."""

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, 'audit_event', None)
        if event is None:
            return super().format(record)

        event = strip_sensitive_fields(event)
        if event.get('error_description'):
            event['error_description'] = redact_description(str(event['error_description']))

        try:
            payload = json.dumps(event, ensure_ascii=False, sort_keys=True)
        except (TypeError, ValueError) as e:
            payload = json.dumps({"event_type": event.get("event_type"), "serialization_error": type(e).__name__})
        return f"AUDIT: {payload}"


class AuditLogHandler(logging.StreamHandler):
    """Stdout handler that flushes after every audit line."""

    def __init__(self):
        super().__init__(stream=sys.stdout)
        self.setFormatter(AuditLogFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
            self.flush()
        except Exception:
            # An unwritable sink must not fail the OAuth request
            self.handleError(record)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


def _env_severity() -> AuditSeverity:
    name = os.getenv("AUDIT_LOG_LEVEL", "MEDIUM").strip().upper()
    if name in AuditSeverity.__members__:
        return AuditSeverity[name]
    logging.warning(f"Unknown AUDIT_LOG_LEVEL {name!r}, using MEDIUM")
    return AuditSeverity.MEDIUM


class AuditLogger:
    """
    Writes OAuth security events to the ``oauth.audit`` logger.

    Settings not passed explicitly are read from the environment when the
    instance is built. Building a new instance replaces the handler installed
    by the previous one.
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        min_severity: Optional[AuditSeverity] = None,
        include_low: Optional[bool] = None
    ):
        self.enabled = _env_flag("AUDIT_LOG_ENABLED", "true") if enabled is None else enabled
        self.min_severity = _env_severity() if min_severity is None else min_severity
        self.include_low = _env_flag("AUDIT_LOG_INCLUDE_LOW", "false") if include_low is None else include_low

        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        for stale in [h for h in self.logger.handlers if isinstance(h, AuditLogHandler)]:
            self.logger.removeHandler(stale)

        handler = AuditLogHandler()
        handler.addFilter(AuditLogFilter(self.min_severity, self.include_low))
        self.logger.addHandler(handler)

    def should_log(self, severity: AuditSeverity) -> bool:
        return self.enabled and severity_enabled(severity, self.min_severity, self.include_low)

    def log_event(
        self,
        event_type: str,
        severity: AuditSeverity,
        action: AuditAction,
        status: str,
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        grant_type: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        status_code: Optional[int] = None,
        source_ip: Optional[str] = None,
        additional_safe_fields: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record one security event.

        Args:
            event_type: e.g. "authorization_granted", "tokens_issued", "token_revoked"
            severity: Event severity
            action: What kind of operation the event describes
            status: "success" or "failure"
            client_id: OAuth client involved, if known
            user_id: Resource owner involved, if known
            grant_type: Token endpoint grant type
            error: OAuth error code for failures
            error_description: Human-readable failure reason
            status_code: HTTP status the request ended with
            source_ip: Requesting address
            additional_safe_fields: Extra context; credential-named keys are dropped
        """
        if not self.should_log(severity):
            return

        event: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "severity": severity.name,
            "action": action.value,
            "status": status,
        }
        for key, value in (
            ("client_id", client_id),
            ("user_id", user_id),
            ("grant_type", grant_type),
            ("error", error),
            ("error_description", error_description),
            ("status_code", status_code),
            ("source_ip", source_ip),
        ):
            if value is not None:
                event[key] = value

        if additional_safe_fields:
            event.update(strip_sensitive_fields(additional_safe_fields))

        self.logger.log(severity.value, event_type, extra={
            'audit_event': event,
            'audit_severity': severity
        })


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Process-wide audit logger, built on first use."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def reset_audit_logger() -> None:
    """Drop the cached logger so the next get_audit_logger() re-reads the environment."""
    global _audit_logger
    _audit_logger = None
