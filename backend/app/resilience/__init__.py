"""
Resilience Package

Every remote call (AI providers, S3, the metadata database) goes through
one RetryExecutor, parameterized by a RetryPolicy. Fault classification is
a declarative pattern table in faults.py.

Public API::

    from app.resilience import RetryExecutor, ENRICHMENT_POLICY

    executor = RetryExecutor()
    result = await executor.execute(lambda attempt: call(), ENRICHMENT_POLICY)
"""

from app.resilience.executor import (
    ENRICHMENT_POLICY,
    PERSISTENCE_POLICY,
    Attempt,
    RetryExecutor,
    RetryPolicy,
)
from app.resilience.faults import FaultClass, FaultClassifier, FaultTracker

__all__ = [
    "ENRICHMENT_POLICY",
    "PERSISTENCE_POLICY",
    "Attempt",
    "RetryExecutor",
    "RetryPolicy",
    "FaultClass",
    "FaultClassifier",
    "FaultTracker",
]
