"""
Logging configuration for Immutable Sandbox.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import List, Optional

# Context variable for correlating all records of one caller operation
operation_id_var: ContextVar[str] = ContextVar('operation_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
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

        operation_id = operation_id_var.get()
        if operation_id:
            log_data["operation_id"] = operation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for provenance audit events.

    Every lifecycle transition, pipeline step and verification outcome
    is emitted as a typed event so an auditor can reconstruct what
    happened to an experiment from the log alone.
    """

    def __init__(self, name: str = "immutable_sandbox.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "operation_id": operation_id_var.get(),
            **kwargs
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

    def experiment_created(self, experiment_id: str, name: str, location: str) -> None:
        self._log(
            logging.INFO,
            "EXPERIMENT_CREATED",
            experiment_id=experiment_id,
            name=name,
            location=location,
            message=f"Experiment {name} registered at {location}"
        )

    def experiment_opened(self, experiment_id: str, previous_status: str) -> None:
        self._log(
            logging.INFO,
            "EXPERIMENT_OPENED",
            experiment_id=experiment_id,
            previous_status=previous_status,
            message=f"Experiment {experiment_id} opened for work"
        )

    def finalize_step(self, experiment_id: str, step: str, **details) -> None:
        """Log completion of one finalize pipeline step."""
        self._log(
            logging.INFO,
            "FINALIZE_STEP",
            experiment_id=experiment_id,
            step=step,
            **details,
            message=f"Finalize step {step} done"
        )

    def finalize_failed(self, experiment_id: str, step: Optional[str], reason: str, state_changed: bool) -> None:
        self._log(
            logging.ERROR,
            "FINALIZE_FAILED",
            experiment_id=experiment_id,
            step=step,
            reason=reason,
            state_changed=state_changed,
            message=f"Finalize failed at step {step}: {reason}"
        )

    def experiment_finalized(
        self,
        experiment_id: str,
        manifest_path: str,
        manifest_sha256: str,
        key_id: str,
        timestamped: bool
    ) -> None:
        self._log(
            logging.INFO,
            "EXPERIMENT_FINALIZED",
            experiment_id=experiment_id,
            manifest_path=manifest_path,
            manifest_sha256=manifest_sha256,
            key_id=key_id,
            timestamped=timestamped,
            message=f"Experiment {experiment_id} finalized"
        )

    def identity_provisioned(self, key_id: str, trust_store_path: str) -> None:
        self._log(
            logging.WARNING,
            "IDENTITY_PROVISIONED",
            key_id=key_id,
            trust_store_path=trust_store_path,
            message=f"New signing identity {key_id} created"
        )

    def timestamp_unavailable(self, experiment_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "TIMESTAMP_UNAVAILABLE",
            experiment_id=experiment_id,
            reason=reason,
            message=f"Trusted timestamp not obtained: {reason}"
        )

    def verification_result(self, experiment_id: Optional[str], outcome: str, problems: List[str]) -> None:
        level = logging.INFO if outcome == "VALID" else logging.WARNING
        self._log(
            level,
            "VERIFICATION_RESULT",
            experiment_id=experiment_id,
            outcome=outcome,
            problems=problems,
            message=f"Verification outcome: {outcome}"
        )

    def experiment_removed(self, experiment_id: str, location: str) -> None:
        self._log(
            logging.WARNING,
            "EXPERIMENT_REMOVED",
            experiment_id=experiment_id,
            location=location,
            message=f"Experiment {experiment_id} removed from registry"
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
        json_format: Use JSON formatting (recommended for production)
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

    # stderr keeps CLI stdout clean for machine-readable output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_operation_id(operation_id: Optional[str] = None) -> str:
    """
    Set the operation ID for the current context.

    Args:
        operation_id: ID to set, or None to generate one

    Returns:
        The operation ID that was set
    """
    if operation_id is None:
        operation_id = str(uuid.uuid4())
    operation_id_var.set(operation_id)
    return operation_id


def get_operation_id() -> str:
    return operation_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
