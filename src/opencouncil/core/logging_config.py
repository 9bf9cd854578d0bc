"""Structured logging configuration for the ingestion services."""

import logging
from typing import Any, Dict, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging with audit capabilities."""

    # Set log level
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    # Configure structlog processors
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        # JSON output for production/audit
        processors.append(structlog.processors.JSONRenderer())
    else:
        # Human-readable for development
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True),
        ])

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_discovery_event(
    logger: structlog.BoundLogger,
    prefix: str,
    scanned: int,
    added: int,
    execution_time_ms: float
) -> None:
    """Log the outcome of one object-store discovery pass."""
    logger.info(
        "discovery_completed",
        prefix=prefix or "*",
        scanned=scanned,
        added=added,
        execution_time_ms=execution_time_ms,
        event_type="discovery"
    )


def log_ingestion_event(
    logger: structlog.BoundLogger,
    source_key: str,
    blob_id: str,
    store_id: str,
    document_id: str,
    version_id: str,
    extracted_chars: int,
    ocr_performed: bool,
    processing_time_ms: float
) -> None:
    """Log a document that reached the search backend and the registry."""
    logger.info(
        "document_ingested",
        source_key=source_key,
        blob_id=blob_id,
        store_id=store_id,
        document_id=document_id,
        version_id=version_id,
        extracted_chars=extracted_chars,
        ocr_performed=ocr_performed,
        processing_time_ms=processing_time_ms,
        event_type="document_ingestion"
    )


def log_ingestion_failure(
    logger: structlog.BoundLogger,
    source_key: str,
    item_id: str,
    error: str,
    requires_approval: bool
) -> None:
    """Log a work item that was recorded as failed."""
    logger.warning(
        "document_ingestion_failed",
        source_key=source_key,
        item_id=item_id,
        error=error,
        requires_approval=requires_approval,
        event_type="document_ingestion"
    )


def log_supervisor_event(
    logger: structlog.BoundLogger,
    action: str,
    item_id: Optional[str] = None,
    source_key: Optional[str] = None,
    attempt: Optional[int] = None,
    exit_code: Optional[int] = None,
    details: Dict[str, Any] = None
) -> None:
    """Log supervisor decisions (launch, crash, give-up)."""
    logger.info(
        "supervisor_" + action,
        item_id=item_id,
        source_key=source_key,
        attempt=attempt,
        exit_code=exit_code,
        details=details or {},
        event_type="supervisor"
    )


def log_watchdog_check(
    logger: structlog.BoundLogger,
    outcome: str,
    synced: int,
    previous_synced: int,
    pending: int
) -> None:
    """Log one watchdog health check."""
    logger.info(
        "watchdog_check",
        outcome=outcome,
        synced=synced,
        synced_delta=synced - previous_synced if previous_synced >= 0 else None,
        pending=pending,
        event_type="watchdog"
    )
