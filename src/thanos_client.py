"""Thanos/Prometheus query client module.

All HTTP access to the metrics backend is isolated here. No other module
imports requests.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests
import urllib3

from config import ThanosConfig

logger = logging.getLogger(__name__)

# The batch deadline is number_of_queries * QUERY_TIMEOUT_PER_KPI_SECONDS
QUERY_TIMEOUT_PER_KPI_SECONDS = 5.0

QUERY_PATH = "/api/v1/query"


class QueryError(Exception):
    """Raised when a query cannot be executed or the backend rejects it."""
    pass


@dataclass(frozen=True)
class Sample:
    """One labeled value returned by an instant query."""
    labels: Dict[str, str]
    value: float
    timestamp: float


@dataclass
class QueryOutcome:
    """Result of executing one query: samples, backend warnings, or an error."""
    samples: List[Sample] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None


def batch_deadline(batch_size: int, now: Optional[float] = None) -> float:
    """Return the monotonic deadline shared by a batch of queries.

    Args:
        batch_size: Number of queries in the batch
        now: Current monotonic time (defaults to time.monotonic())

    Returns:
        Monotonic timestamp after which no query in the batch may run
    """
    if now is None:
        now = time.monotonic()
    return now + batch_size * QUERY_TIMEOUT_PER_KPI_SECONDS


class ThanosClient:
    """Instant-query client for the Prometheus HTTP API.

    One client is used by a single thread; each frequency group builds its
    own because requests.Session is not safe to share across threads.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        insecure_tls: bool = False,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Backend URL including scheme, e.g. https://thanos.example.com
            token: Bearer token sent with every request
            insecure_tls: Skip TLS certificate verification
            session: Optional pre-built session (used by tests)
        """
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers["Authorization"] = f"Bearer {token}"
        self._session.headers["Accept"] = "application/json"
        if insecure_tls:
            self._session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @classmethod
    def from_config(cls, config: ThanosConfig) -> "ThanosClient":
        return cls(config.url, config.token, config.insecure_tls)

    def close(self) -> None:
        self._session.close()

    def query(
        self, promquery: str, deadline: float, at: Optional[float] = None
    ) -> Tuple[List[Sample], List[str]]:
        """Run an instant query.

        Args:
            promquery: PromQL expression
            deadline: Monotonic deadline shared with the rest of the batch
            at: Evaluation time as a unix timestamp (defaults to now)

        Returns:
            Tuple of (samples, warnings)

        Raises:
            QueryError: On timeout, transport failure, backend rejection or
                an unsupported result type
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise QueryError("batch deadline exceeded before query started")

        if at is None:
            at = time.time()

        try:
            response = self._session.get(
                self._base_url + QUERY_PATH,
                params={"query": promquery, "time": f"{at:.3f}"},
                timeout=remaining,
            )
        except requests.Timeout as e:
            raise QueryError(f"query timed out after {remaining:.1f}s") from e
        except requests.RequestException as e:
            raise QueryError(f"request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            raise QueryError(
                f"HTTP {response.status_code}: response is not valid JSON"
            )

        if not isinstance(body, dict):
            raise QueryError(f"HTTP {response.status_code}: unexpected response body")

        if body.get("status") != "success":
            error_type = body.get("errorType", "error")
            message = body.get("error", f"HTTP {response.status_code}")
            raise QueryError(f"{error_type}: {message}")

        if response.status_code >= 400:
            raise QueryError(f"HTTP {response.status_code}")

        warnings = [str(w) for w in body.get("warnings") or []]
        samples = _parse_result(body.get("data") or {})
        return samples, warnings

    def execute(self, promquery: str, deadline: float) -> QueryOutcome:
        """Run an instant query, capturing any failure in the outcome."""
        try:
            samples, warnings = self.query(promquery, deadline)
        except QueryError as e:
            return QueryOutcome(error=e)
        return QueryOutcome(samples=samples, warnings=warnings)


def _parse_result(data: Dict[str, Any]) -> List[Sample]:
    """Convert the data section of a query response into samples.

    Raises:
        QueryError: If the result type is not vector or scalar, or a value
            cannot be parsed
    """
    result_type = data.get("resultType")
    result = data.get("result")

    try:
        if result_type == "vector":
            samples = []
            for series in result or []:
                timestamp, value = series["value"]
                samples.append(
                    Sample(
                        labels={str(k): str(v) for k, v in (series.get("metric") or {}).items()},
                        value=float(value),
                        timestamp=float(timestamp),
                    )
                )
            return samples

        if result_type == "scalar":
            timestamp, value = result
            return [Sample(labels={}, value=float(value), timestamp=float(timestamp))]
    except (KeyError, TypeError, ValueError) as e:
        raise QueryError(f"malformed {result_type} result: {e}") from e

    raise QueryError(f"unsupported result type: {result_type}")
