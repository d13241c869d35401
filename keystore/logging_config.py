"""
Logging configuration for the keystore.

Provides structured JSON logging and an audit logger for identity changes,
authorization decisions and batch outcomes.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Context variable for batch ID tracking
batch_id_var: ContextVar[str] = ContextVar('batch_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line, suitable for log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        batch_id = batch_id_var.get()
        if batch_id:
            log_data["batch_id"] = batch_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Byte values (addresses, public keys) are logged as hex.
    """

    def __init__(self, name: str = "keystore.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "batch_id": batch_id_var.get(),
            **{k: (v.hex() if isinstance(v, (bytes, bytearray)) else v) for k, v in kwargs.items()}
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def identity_created(self, identity: bytes, owner: bytes, vault: bytes) -> None:
        self._log(
            logging.INFO,
            "IDENTITY_CREATED",
            identity=identity,
            owner=owner,
            vault=vault,
            message="Identity created with 1 key"
        )

    def key_added(self, identity: bytes, key_index: int, key_count: int) -> None:
        self._log(
            logging.INFO,
            "KEY_ADDED",
            identity=identity,
            key_index=key_index,
            key_count=key_count,
            message=f"Key added. Total keys: {key_count}"
        )

    def credential_registered(self, identity: bytes, key_index: int) -> None:
        self._log(
            logging.INFO,
            "CREDENTIAL_REGISTERED",
            identity=identity,
            key_index=key_index,
            message=f"Credential registered for key index {key_index}"
        )

    def authorization_decision(
        self,
        identity: bytes,
        decision: str,
        action_type: str,
        nonce: int,
        key_indices: Optional[List[int]] = None,
        error_code: Optional[str] = None
    ) -> None:
        """Log an authorization decision."""
        level = logging.INFO if decision == "COMMITTED" else logging.WARNING
        self._log(
            level,
            "AUTHORIZATION_DECISION",
            identity=identity,
            decision=decision,
            action_type=action_type,
            nonce=nonce,
            key_indices=key_indices,
            error_code=error_code,
            message=f"Authorization decision: {decision}"
        )

    def batch_committed(self, instruction_count: int) -> None:
        self._log(
            logging.INFO,
            "BATCH_COMMITTED",
            instruction_count=instruction_count,
            message=f"Batch committed ({instruction_count} instructions)"
        )

    def batch_rejected(self, instruction_index: Optional[int], error_code: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "BATCH_REJECTED",
            instruction_index=instruction_index,
            error_code=error_code,
            reason=reason,
            message=f"Batch rejected: {error_code}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_batch_id(batch_id: Optional[str] = None) -> str:
    """
    Set the batch ID for the current context.

    Returns:
        The batch ID that was set
    """
    if batch_id is None:
        batch_id = str(uuid.uuid4())
    batch_id_var.set(batch_id)
    return batch_id


def get_batch_id() -> str:
    """Get the current batch ID."""
    return batch_id_var.get()


def log_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the structured fields attached to an audit record."""
    return getattr(record, "extra_fields", {})


# Global audit logger instance
audit_log = AuditLogger()
