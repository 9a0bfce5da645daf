"""
Logging Configuration for the Iterative RAG Server
Structured logging with a decision audit trail
"""

import logging
import logging.config
import sys
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .settings import get_settings

settings = get_settings()


def setup_logging():
    """
    Set up logging for the iterative RAG server.
    Includes the decision audit log written by the orchestrator.
    """

    # Ensure log directory exists
    log_path = Path(settings.log_path)
    log_path.mkdir(parents=True, exist_ok=True)

    # Define log file paths
    main_log_file = log_path / "rag_server.log"
    audit_log_file = log_path / "decision_audit.log"
    error_log_file = log_path / "errors.log"

    file_formatter = "json" if settings.structured_logging else "detailed"

    # Logging configuration
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(funcName)s() - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "audit": {
                "format": "%(asctime)s [AUDIT] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(pathname)s %(lineno)d"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "INFO",
                "formatter": "standard",
                "stream": sys.stdout
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": file_formatter,
                "filename": str(main_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8"
            },
            "audit_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "json" if settings.structured_logging else "audit",
                "filename": str(audit_log_file),
                "maxBytes": 52428800,  # 50MB
                "backupCount": 10,
                "encoding": "utf8"
            },
            "error_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": "detailed",
                "filename": str(error_log_file),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 10,
                "encoding": "utf8"
            }
        },
        "loggers": {
            "": {  # Root logger
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "rag_server": {
                "level": settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "iterative_rag": {
                "level": "DEBUG" if settings.debug else settings.log_level,
                "handlers": ["console", "file", "error_file"],
                "propagate": False
            },
            "audit": {
                "level": "INFO",
                "handlers": ["audit_file"],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console", "file"],
                "propagate": False
            },
            "uvicorn.access": {
                "level": "INFO",
                "handlers": ["file"],
                "propagate": False
            },
            "httpx": {
                "level": "WARNING",
                "handlers": ["file"],
                "propagate": False
            }
        }
    }

    # Apply configuration
    logging.config.dictConfig(logging_config)

    # Log startup information
    logger = logging.getLogger("rag_server")
    logger.info("Logging system initialized")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Log directory: {settings.log_path}")
    logger.info(f"Decision audit: {'enabled' if settings.enable_decision_audit else 'disabled'}")


class DecisionAuditLogger:
    """
    Audit trail for the iterative RAG loop.
    One record per oracle decision, quality-gate override and termination.
    """

    def __init__(self, enabled: Optional[bool] = None):
        self.logger = logging.getLogger("audit")
        self.enabled = get_settings().enable_decision_audit if enabled is None else enabled

    def _emit(self, label: str, entry: Dict[str, Any]):
        if not self.enabled:
            return
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **entry}
        self.logger.info(f"{label}: {entry}")

    def log_decision(
        self,
        request_id: str,
        turn: int,
        query: str,
        decision: str,
        strategy: str,
        new_context_count: int,
        quality: Optional[float] = None,
        confidence: Optional[float] = None,
    ):
        """
        Log the oracle's decision for a turn
        """
        self._emit("RAG_DECISION", {
            "event_type": "RAG_DECISION",
            "request_id": request_id,
            "turn": turn,
            "query": query[:200],
            "decision": decision,
            "strategy": strategy,
            "new_context_count": new_context_count,
            "quality": quality,
            "confidence": confidence,
        })

    def log_override(
        self,
        request_id: str,
        turn: int,
        reasons: list,
        corrective_query: str,
        verdict: Optional[Dict[str, Any]] = None,
    ):
        """
        Log a quality-gate or reflection override of an ANSWER decision
        """
        entry = {
            "event_type": "RAG_OVERRIDE",
            "request_id": request_id,
            "turn": turn,
            "reasons": reasons,
            "corrective_query": corrective_query[:200],
        }
        if verdict is not None:
            entry["verdict"] = verdict
        self._emit("RAG_OVERRIDE", entry)

    def log_termination(
        self,
        request_id: str,
        reason: str,
        iterations: int,
        context_items: int,
        citations: int,
        answered: bool,
    ):
        """
        Log how an iterative search concluded
        """
        self._emit("RAG_TERMINATION", {
            "event_type": "RAG_TERMINATION",
            "request_id": request_id,
            "reason": reason,
            "iterations": iterations,
            "context_items": context_items,
            "citations": citations,
            "answered": answered,
        })

    def log_citation_warning(
        self,
        request_id: str,
        invalid_ids: list,
        total_citations: int,
    ):
        """
        Log citation references that point outside the generated citation range
        """
        self._emit("CITATION_WARNING", {
            "event_type": "CITATION_WARNING",
            "request_id": request_id,
            "invalid_ids": invalid_ids,
            "total_citations": total_citations,
        })


# Global audit logger instance
decision_audit_logger = DecisionAuditLogger()
