#!/usr/bin/env python3
"""
Finding Synthesis Exceptions Module

Custom exception classes for the finding synthesis engine.
Centralized exception definitions for consistent error handling.
"""

__all__ = [
    "SynthesisError",
    "ValidationError",
    "AnalyzerError",
    "TrackerError",
    "TriageCancelled",
    "ConfigError",
]


class SynthesisError(Exception):
    """Base exception for all synthesis-related errors"""
    pass


class ValidationError(SynthesisError):
    """Raised when a raw analyzer payload cannot be normalized into a Finding

    Carries enough context to report the failure per item without aborting
    the rest of the batch.
    """

    def __init__(self, message: str, analyzer_id: str = "", index: int = -1, errors: list = None):
        super().__init__(message)
        self.analyzer_id = analyzer_id
        self.index = index
        self.errors = errors or []

    def to_dict(self) -> dict:
        return {
            "analyzer_id": self.analyzer_id,
            "index": self.index,
            "message": str(self),
            "errors": list(self.errors),
        }


class AnalyzerError(SynthesisError):
    """Raised when an analyzer fails to produce findings"""
    pass


class TrackerError(SynthesisError):
    """Raised when the external task tracker rejects or fails a call"""
    pass


class TriageCancelled(SynthesisError):
    """Raised by a decision provider to stop the session between findings"""
    pass


class ConfigError(SynthesisError):
    """Raised when configuration cannot be loaded or is invalid"""
    pass
