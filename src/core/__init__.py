"""
Core library: infrastructure shared by the staging engine.

Modules:
    logging     - Structured JSON logging with context propagation
    errors      - Error classification and exception hierarchy
    utils       - JSON serialization and worker id helpers

Design Principles:
    - No dependencies on a specific staging backend or adapter
    - All modules are independently testable
    - Type hints throughout
"""

from .types import ErrorCategory, ErrorClassifier

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
]
