"""
Temporary credentials for customer accounts via sts:AssumeRole.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cloudaudit.core.exceptions import CredentialError

logger = logging.getLogger(__name__)

ROLE_ARN_PATTERN = re.compile(r"^arn:aws[a-zA-Z-]*:iam::\d{12}:role/[\w+=,.@/-]+$")

# Refuse credentials that will expire before a check can realistically finish
EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class AwsCredentials:
    """Temporary credentials scoped to one customer account."""
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str]
    expiration: Optional[datetime]
    role_arn: Optional[str] = None
    region_name: Optional[str] = None

    def is_expired(self, margin_seconds: int = 0) -> bool:
        if self.expiration is None:
            return False
        remaining = (self.expiration - datetime.now(timezone.utc)).total_seconds()
        return remaining <= margin_seconds

    def validate(self) -> None:
        """
        Raise CredentialError if the credentials cannot be used for a run.
        """
        if not self.access_key_id or not self.secret_access_key:
            raise CredentialError("Temporary credentials are missing an access key or secret")
        if self.is_expired(EXPIRY_MARGIN_SECONDS):
            raise CredentialError(f"Temporary credentials for {self.role_arn or 'account'} are expired")

    def session(self) -> boto3.session.Session:
        return boto3.session.Session(
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            aws_session_token=self.session_token,
            region_name=self.region_name,
        )


class StsCredentialProvider:
    """Assumes the customer's inspection role and returns its temporary credentials."""

    def __init__(
        self,
        region_name: str = "us-east-1",
        external_id: Optional[str] = None,
        duration_seconds: int = 3600,
        session: Optional[boto3.session.Session] = None,
    ):
        self.region_name = region_name
        self.external_id = external_id
        self.duration_seconds = duration_seconds
        self._session = session or boto3.session.Session(region_name=region_name)

    def get_credentials(self, role_arn: str, run_id: str) -> AwsCredentials:
        """
        Assume ``role_arn`` for one run.

        Args:
            role_arn: IAM role in the customer account
            run_id: Used in the role session name so CloudTrail ties calls to the run

        Returns:
            AwsCredentials with the STS expiration

        Raises:
            CredentialError: ARN malformed or AssumeRole refused
        """
        if not role_arn or not ROLE_ARN_PATTERN.match(role_arn):
            raise CredentialError(f"Invalid role ARN: {role_arn!r}")

        params = {
            "RoleArn": role_arn,
            # Session names are capped at 64 chars
            "RoleSessionName": f"inspection-{run_id}"[:64],
            "DurationSeconds": self.duration_seconds,
        }
        if self.external_id:
            params["ExternalId"] = self.external_id

        sts = self._session.client("sts", region_name=self.region_name)
        try:
            response = sts.assume_role(**params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            message = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"AssumeRole failed for {role_arn}: {code} - {message}")
            if code == "AccessDenied":
                raise CredentialError(
                    f"Access denied assuming {role_arn}: check the role exists and its trust policy"
                ) from e
            raise CredentialError(f"AssumeRole failed for {role_arn}: {code} {message}") from e
        except BotoCoreError as e:
            logger.error(f"AssumeRole failed for {role_arn}: {e}")
            raise CredentialError(f"AssumeRole failed for {role_arn}: {e}") from e

        creds = response["Credentials"]
        expiration = creds.get("Expiration")
        if isinstance(expiration, datetime) and expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)

        logger.info(f"Assumed {role_arn} for run {run_id}; expires {expiration}")
        return AwsCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds.get("SessionToken"),
            expiration=expiration,
            role_arn=role_arn,
            region_name=self.region_name,
        )
