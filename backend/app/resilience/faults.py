"""
Network Fault Classifier

Maps a caught exception to one of three fault classes:

  transient  — protocol resets, "unavailable", deadline exceeded, generic
               network failures, rate limiting. Safe to retry.
  permanent  — authentication / authorization failures, malformed input.
               Retrying cannot succeed; fail immediately.
  unknown    — nothing matched. Treated as transient, but with a reduced
               retry allowance so an unclassified error cannot loop forever.

Classification order:
  1. Taxonomy types (PermanentServiceError, ValidationError and
     DocumentNotFoundError are permanent; TransientServiceError is transient)
  2. Well-known transport exception types (asyncio / httpx / builtins)
  3. Class-name suffixes of third-party SDK errors (RateLimitError, …)
  4. The declarative pattern table below, matched against the message
     and any HTTP status code carried by the exception

The table is data: add a row to teach the classifier a new signature.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum

import httpx
from botocore.exceptions import ClientError

from app.core.exceptions import (
    DocumentNotFoundError,
    PermanentServiceError,
    TransientServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class FaultClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN   = "unknown"


# ---------------------------------------------------------------------------
# Pattern table — first match wins, permanent signatures are listed first
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FaultPattern:
    signature: str            # short name used in log lines
    pattern:   re.Pattern[str]
    fault:     FaultClass


def _p(signature: str, regex: str, fault: FaultClass) -> FaultPattern:
    return FaultPattern(signature, re.compile(regex, re.IGNORECASE), fault)


FAULT_PATTERNS: tuple[FaultPattern, ...] = (
    # --- permanent ---------------------------------------------------------
    _p("auth",
       r"\b(401|403)\b|unauthori[sz]ed|forbidden|invalid api key|invalid token|"
       r"authentication|permission denied|access denied|unauthenticated",
       FaultClass.PERMANENT),
    _p("malformed_input",
       r"\b(400|404|413|415|422)\b|bad request|malformed|invalid input|invalid argument|"
       r"unprocessable|not supported|unsupported|not found",
       FaultClass.PERMANENT),

    # --- transient ---------------------------------------------------------
    _p("protocol",
       r"quic|protocol error|connection reset|econnreset|broken pipe|remoteprotocolerror|"
       r"stream (was )?reset|http/2",
       FaultClass.TRANSIENT),
    _p("availability",
       r"\b(500|502|503|504)\b|unavailable|overloaded|model is (currently )?loading|"
       r"internal server error|bad gateway|gateway",
       FaultClass.TRANSIENT),
    _p("deadline",
       r"deadline exceeded|deadline-exceeded|timed out|timeout",
       FaultClass.TRANSIENT),
    _p("rate_limit",
       r"\b429\b|rate limit|too many requests|quota exceeded|throttl",
       FaultClass.TRANSIENT),
    _p("network",
       r"network|fetch failed|connection refused|econnrefused|connection aborted|"
       r"name resolution|dns|socket hang up|enotfound",
       FaultClass.TRANSIENT),
)

# Third-party exception class names that always mean "try again"
_RETRYABLE_EXCEPTION_TYPES = (
    "RateLimitError",
    "ServiceUnavailableError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
    "EndpointConnectionError",
)

_TRANSIENT_TYPES = (
    TransientServiceError,
    asyncio.TimeoutError,
    httpx.TransportError,
    ConnectionError,
)


def _describe(exc: BaseException) -> str:
    """Message plus any status/code attributes, for pattern matching."""
    parts = [type(exc).__name__, str(exc)]
    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        parts.append(str(status_code))
    if isinstance(exc, ClientError):
        parts.append(exc.response.get("Error", {}).get("Code", ""))
        parts.append(str(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", "")))
    if isinstance(exc, httpx.HTTPStatusError):
        parts.append(str(exc.response.status_code))
    return " ".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class FaultClassifier:
    """
    Stateless classifier. Safe to share across concurrent pipelines.

    unknown_retry_allowance: number of retries an unclassified error may
    consume after its first occurrence.
    """

    def __init__(
        self,
        patterns: tuple[FaultPattern, ...] = FAULT_PATTERNS,
        unknown_retry_allowance: int = 1,
    ) -> None:
        self._patterns = patterns
        self.unknown_retry_allowance = unknown_retry_allowance

    def match(self, exc: BaseException) -> FaultPattern | None:
        text = _describe(exc)
        for row in self._patterns:
            if row.pattern.search(text):
                return row
        return None

    def classify(self, exc: BaseException) -> FaultClass:
        if isinstance(exc, (PermanentServiceError, ValidationError, DocumentNotFoundError)):
            return FaultClass.PERMANENT
        if isinstance(exc, _TRANSIENT_TYPES):
            return FaultClass.TRANSIENT
        if any(type(exc).__name__.endswith(n) for n in _RETRYABLE_EXCEPTION_TYPES):
            return FaultClass.TRANSIENT

        row = self.match(exc)
        if row is None:
            return FaultClass.UNKNOWN
        return row.fault


# ---------------------------------------------------------------------------
# Bounded, resettable failure counter
# ---------------------------------------------------------------------------

@dataclass
class FaultTracker:
    """
    Consecutive-failure counter for one retry sequence.

    A success resets both counters so a later fault starts a fresh
    sequence instead of compounding earlier ones.
    """
    max_failures:     int
    failures:         int = 0
    unknown_failures: int = 0

    def record_failure(self, fault: FaultClass) -> int:
        self.failures = min(self.failures + 1, self.max_failures)
        if fault is FaultClass.UNKNOWN:
            self.unknown_failures += 1
        return self.failures

    def record_success(self) -> None:
        self.failures = 0
        self.unknown_failures = 0

    @property
    def exhausted(self) -> bool:
        return self.failures >= self.max_failures
