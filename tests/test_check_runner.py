"""
Tests for check execution, error classification and retry.
"""
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from cloudaudit.core.exceptions import CredentialsExpiredError
from cloudaudit.services.check_runner import (
    CheckRunner,
    ErrorKind,
    classify_error,
    linear,
)
from cloudaudit.services.sts_service import AwsCredentials
from fakes import StaticCheck, make_finding


def client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} happened"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "DescribeSecurityGroups",
    )


class FlakyCheck:
    """Makes one provider call through the context; each attempt pops the next side effect."""
    check_id = "flaky"
    service = "EC2"

    def __init__(self, side_effects):
        self.side_effects = list(side_effects)
        self.attempts = 0

    def _provider_call(self):
        self.attempts += 1
        effect = self.side_effects.pop(0) if self.side_effects else None
        if isinstance(effect, Exception):
            raise effect
        return {"SecurityGroups": [{"GroupId": "sg-1"}]}

    def run(self, context):
        response = context.call(self._provider_call)
        context.accumulator.increment_resources(len(response["SecurityGroups"]))


@pytest.mark.parametrize("exc,expected", [
    (client_error("Throttling"), ErrorKind.TRANSIENT),
    (client_error("RequestLimitExceeded"), ErrorKind.TRANSIENT),
    (client_error("ServiceUnavailable", 503), ErrorKind.TRANSIENT),
    (client_error("SomethingOdd", 502), ErrorKind.TRANSIENT),
    (EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com"), ErrorKind.TRANSIENT),
    (client_error("AccessDenied", 403), ErrorKind.PERMANENT),
    (client_error("InvalidParameterValue"), ErrorKind.PERMANENT),
    (CredentialsExpiredError("expired"), ErrorKind.PERMANENT),
    (ValueError("bad input"), ErrorKind.PERMANENT),
])
def test_classify_error(exc, expected):
    assert classify_error(exc) is expected


def test_linear_wait_generator():
    waits = linear(2.0)
    next(waits)  # primed by backoff with send(None)
    assert [next(waits) for _ in range(3)] == [2.0, 4.0, 6.0]


def test_transient_error_is_retried_until_success():
    check = FlakyCheck([client_error("Throttling"), client_error("Throttling")])
    outcome = CheckRunner(max_retries=3, base_delay=0).run(check, None)

    assert outcome.ok
    assert check.attempts == 3
    assert outcome.resources_scanned == 1


def test_transient_error_surfaces_after_max_attempts():
    check = FlakyCheck([client_error("Throttling")] * 5)
    outcome = CheckRunner(max_retries=3, base_delay=0).run(check, None)

    assert check.attempts == 3
    assert outcome.error.kind is ErrorKind.TRANSIENT
    assert outcome.error.code == "Throttling"
    assert outcome.error.check_id == "flaky"


def test_permanent_error_is_not_retried():
    check = FlakyCheck([client_error("AccessDenied", 403)])
    outcome = CheckRunner(max_retries=3, base_delay=0).run(check, None)

    assert check.attempts == 1
    assert outcome.error.kind is ErrorKind.PERMANENT
    assert "AccessDenied" in str(outcome.error)


def test_findings_before_failure_are_kept():
    check = StaticCheck("open-ssh", findings=[make_finding("sg-1"), make_finding("sg-2")],
                        error=RuntimeError("boom"))
    outcome = CheckRunner(base_delay=0).run(check, None)

    assert len(outcome.findings) == 2
    assert outcome.error.kind is ErrorKind.PERMANENT
    assert outcome.error.code == "RuntimeError"


def test_runner_never_raises_on_unexpected_errors():
    class Broken:
        check_id = "broken"
        service = "IAM"

        def run(self, context):
            raise KeyError("missing")

    outcome = CheckRunner(base_delay=0).run(Broken(), None)
    assert not outcome.ok
    assert outcome.findings == []


def test_expired_credentials_fail_without_running_the_check():
    credentials = AwsCredentials(
        access_key_id="AKIA",
        secret_access_key="secret",
        session_token="token",
        expiration=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    check = StaticCheck("open-ssh")
    outcome = CheckRunner(base_delay=0).run(check, credentials)

    assert check.calls == 0
    assert outcome.error.kind is ErrorKind.PERMANENT
    assert outcome.error.code == "CredentialsExpiredError"
