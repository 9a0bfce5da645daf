"""
Iterative RAG Server Configuration Module
Manages all configuration for the codebase memory server
"""

from .settings import settings, get_settings
from .logging_config import setup_logging, DecisionAuditLogger

__all__ = ["settings", "get_settings", "setup_logging", "DecisionAuditLogger"]
