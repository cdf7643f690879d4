"""
Check execution with bounded retry around provider calls.

A check reports through a run-scoped FindingAccumulator and makes its
provider calls through ``CheckContext.call``. ``CheckRunner.run`` never
raises: every failure comes back as a ``CheckError`` value alongside
whatever the check reported before failing.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

import backoff
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from cloudaudit.core.exceptions import CredentialsExpiredError
from cloudaudit.schemas.records import Finding
from cloudaudit.services.check_catalog import Check

logger = logging.getLogger(__name__)

THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "SlowDown",
    "ProvisionedThroughputExceededException",
    "RequestThrottled",
    "RequestThrottledException",
})

UNAVAILABLE_CODES = frozenset({
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "RequestTimeout",
    "RequestTimeoutException",
})

NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionError,
    TimeoutError,
)


class ErrorKind(str, enum.Enum):
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return type(exc).__name__


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Transient: rate limiting, temporary unavailability, network failures.
    Everything else, including authorization and expired credentials, is permanent.
    """
    if isinstance(exc, CredentialsExpiredError):
        return ErrorKind.PERMANENT
    if isinstance(exc, ClientError):
        code = error_code(exc)
        if code in THROTTLING_CODES or code.startswith("Throttling"):
            return ErrorKind.TRANSIENT
        if code in UNAVAILABLE_CODES:
            return ErrorKind.TRANSIENT
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if status in (500, 502, 503, 504):
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    if isinstance(exc, NETWORK_ERRORS):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def linear(base: float = 1.0):
    """backoff wait generator: base * 1, base * 2, base * 3, ..."""
    # backoff primes the generator with send(None)
    yield
    attempt = 1
    while True:
        yield base * attempt
        attempt += 1


def _log_backoff(details) -> None:
    exc = details.get("exception")
    logger.warning(
        f"Retrying {getattr(details.get('target'), '__name__', 'provider call')} "
        f"after {error_code(exc) if exc else 'error'}: "
        f"attempt {details['tries']}, waiting {details['wait']:.1f}s"
    )


def _is_permanent(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.PERMANENT


@dataclass
class CheckError:
    """Terminal error value produced at the runner boundary."""
    kind: ErrorKind
    code: str
    message: str
    check_id: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, check_id: Optional[str] = None) -> "CheckError":
        return cls(kind=classify_error(exc), code=error_code(exc), message=str(exc), check_id=check_id)

    def __str__(self) -> str:
        prefix = f"{self.check_id}: " if self.check_id else ""
        return f"{prefix}{self.code}: {self.message}"


class FindingAccumulator:
    """Run-scoped collector of findings and scanned-resource counts."""

    def __init__(self):
        self.findings: List[Finding] = []
        self.resources_scanned = 0

    def add(self, finding: Finding) -> Finding:
        self.findings.append(finding)
        return finding

    def add_finding(self, resource_id: str, resource_type: str, issue: str, recommendation: str) -> Finding:
        return self.add(Finding(
            resource_id=resource_id,
            resource_type=resource_type,
            issue=issue,
            recommendation=recommendation,
        ))

    def increment_resources(self, count: int = 1) -> None:
        self.resources_scanned += count


class CheckContext:
    """Everything a check needs while it runs."""

    def __init__(self, session, credentials, scope: Tuple[str, ...],
                 accumulator: FindingAccumulator, max_tries: int = 3, base_delay: float = 1.0):
        self.session = session
        self.credentials = credentials
        self.scope = scope
        self.accumulator = accumulator
        self.max_tries = max(1, max_tries)
        self.base_delay = base_delay

    def client(self, service_name: str, region_name: Optional[str] = None):
        return self.session.client(service_name, region_name=region_name)

    def _ensure_not_expired(self) -> None:
        if self.credentials is not None and self.credentials.is_expired():
            raise CredentialsExpiredError("Temporary credentials expired during the inspection")

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Invoke one provider call, retrying transient failures.

        Up to ``max_tries`` attempts; the wait before attempt n+1 is
        ``base_delay * n``. Non-transient errors and the last transient one
        are re-raised unchanged.
        """
        @backoff.on_exception(
            linear,
            Exception,
            max_tries=self.max_tries,
            giveup=_is_permanent,
            on_backoff=_log_backoff,
            jitter=None,
            base=self.base_delay,
        )
        def _attempt():
            self._ensure_not_expired()
            return fn(*args, **kwargs)

        return _attempt()


@dataclass
class CheckOutcome:
    findings: List[Finding] = field(default_factory=list)
    resources_scanned: int = 0
    error: Optional[CheckError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CheckRunner:
    """Executes one check against live credentials."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0):
        self.max_retries = max_retries
        self.base_delay = base_delay

    def run(self, check: Check, credentials, scope: Tuple[str, ...] = ()) -> CheckOutcome:
        """
        Run ``check`` and return its findings, resource count and error.

        Never raises. Findings reported before a failure are kept.
        """
        accumulator = FindingAccumulator()
        error: Optional[CheckError] = None
        try:
            if credentials is not None and credentials.is_expired():
                raise CredentialsExpiredError("Temporary credentials expired before the check started")
            session = credentials.session() if credentials is not None else None
            context = CheckContext(
                session=session,
                credentials=credentials,
                scope=tuple(scope),
                accumulator=accumulator,
                max_tries=self.max_retries,
                base_delay=self.base_delay,
            )
            check.run(context)
        except Exception as e:
            error = CheckError.from_exception(e, check_id=check.check_id)
            logger.warning(f"Check {check.check_id} failed ({error.kind.value}): {error}")

        return CheckOutcome(
            findings=list(accumulator.findings),
            resources_scanned=accumulator.resources_scanned,
            error=error,
        )
