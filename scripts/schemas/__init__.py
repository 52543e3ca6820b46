"""
Pydantic schemas for the finding synthesis pipeline

This package contains the Pydantic schemas for data crossing pipeline
boundaries: raw analyzer output, the normalized finding record, and the
triage transcript emitted at session end.
"""

from .finding import (
    EVIDENCE_SIGNALS,
    FALSE_POSITIVE_SIGNALS,
    AnalyzerFindingPayload,
    Category,
    ConfidenceSignal,
    Finding,
    Location,
    Severity,
    signal_present,
)
from .transcript import (
    BUCKET_HIGH,
    BUCKET_LOW,
    BUCKET_MEDIUM,
    DecisionRecord,
    TriageTranscript,
    confidence_buckets,
)

__all__ = [
    # Finding schemas
    "Severity",
    "Category",
    "ConfidenceSignal",
    "EVIDENCE_SIGNALS",
    "FALSE_POSITIVE_SIGNALS",
    "signal_present",
    "Location",
    "AnalyzerFindingPayload",
    "Finding",
    # Transcript schemas
    "BUCKET_HIGH",
    "BUCKET_MEDIUM",
    "BUCKET_LOW",
    "confidence_buckets",
    "DecisionRecord",
    "TriageTranscript",
]
