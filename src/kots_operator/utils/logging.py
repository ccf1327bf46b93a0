# ABOUTME: Structured logging with correlation IDs for the KOTS operator
# ABOUTME: Implements audit logging for every cluster-mutating operation

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module provides the operator's observability plumbing:

1. STRUCTURED LOGGING: Every log line is a set of key/value pairs rendered as
   JSON (in-cluster) or colored text (local runs).

2. CORRELATION IDs: One ID per inbound control-plane command. A deploy fans
   out into dry runs, applies, deletions and a result report; with the same
   correlation_id on every line they can be pulled back together:

       jq 'select(.correlation_id == "a1b2c3d4")'

3. AUDIT LOGGING: A compact record of every change the operator makes to the
   cluster (applies, deletions, helm releases, hook job cleanup).

=============================================================================
CONTEXT VARIABLES (contextvars)
=============================================================================

The operator is a single asyncio process running many tasks at once: a
deploy for one app, informer callbacks for another, a status push for a
third. A ContextVar gives each task its own correlation ID. Tasks created
with asyncio.create_task() copy the current context, so a deploy task keeps
the ID set by the dispatcher that spawned it.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Background tasks (informers, the reconnect loop) run outside any command
    and get a fresh ID the first time they log.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for current context.

    Called by the command dispatcher before a command task is created.

    Args:
        cid: The correlation ID to set, or "" to generate a new one lazily.
    """
    correlation_id.set(cid)


def new_correlation_id() -> str:
    """Start a new correlation scope and return its ID."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Add correlation ID to log events.

    Structlog processor: receives the event dictionary, returns it enriched.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
) -> None:
    """
    Configure structured logging.

    Call once at startup; calling again reconfigures (e.g. after settings
    with a different level have been loaded).

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: Adds any bound context variables
    2. add_log_level: Adds "level"
    3. TimeStamper: Adds ISO-format timestamp
    4. add_correlation_id: Adds the command correlation ID
    5. Renderer: JSON or colored console text

    Args:
        level: Logging level name ("DEBUG", "INFO", ...).
        json_output: JSON lines when True, console renderer otherwise.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGING
# =============================================================================


class AuditLogger:
    """
    Audit logger for cluster-mutating operations.

    WHAT WE LOG:
    ------------
    - timestamp: When it happened (UTC ISO 8601)
    - correlation_id: The command that caused it
    - action: "deploy", "delete_manifest", "helm_install", "delete_hook_job", ...
    - target: What was affected ("my-app", "default/Deployment/web")
    - result: "success", "failed" or "error"
    - details: Additional context (namespace, stderr excerpt, flags)

    TWO OUTPUT MODES:
    -----------------
    1. FILE: Append JSON lines to a file (KOTS_OPERATOR_AUDIT_LOG)
    2. STDOUT: Emit an "audit" event through structlog

    EXAMPLE ENTRY:
    --------------
    {"timestamp": "2024-01-15T10:30:00Z", "correlation_id": "abc123",
     "action": "delete_manifest", "target": "default/Deployment/web",
     "result": "success"}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Initialize audit logger.

        Args:
            log_path: Path to audit log file, or None for structlog output.
                     The file is appended to, never truncated.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action.

        Args:
            action: Operation performed.
            target: Target resource identifier.
            result: "success", "failed" (application-level) or "error" (hard).
            details: Additional context.
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }

        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_success(
        self,
        action: str,
        target: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a completed change."""
        self.log(action, target, "success", details)

    def log_failed(self, action: str, target: str, stderr: str) -> None:
        """
        Log an application-level failure.

        Used when an external command ran but exited non-zero. Only the tail
        of stderr is kept; the full text goes into the deploy report.
        """
        self.log(action, target, "failed", {"stderr": stderr[-500:]})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Log a hard failure that aborted the operation."""
        self.log(action, target, "error", {"error": error})
