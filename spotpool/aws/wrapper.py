import functools
import logging
from datetime import datetime, timedelta, timezone

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from retry import retry

RETRIES_NUMBER = 3
REGION = 'us-east-1'
REQUEST_TIMEOUT = 10

THROTTLING_CODES = {
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'RequestThrottled',
    'RequestThrottledException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'SlowDown',
}


class ThrottlingError(ClientError):
    """A ClientError whose code says the request was throttled and may be retried as is."""


def retry_on_throttling(tries: int = RETRIES_NUMBER, delay: float = 3, backoff: float = 1):
    """
    Retry the decorated call only when AWS throttles it.

    Any other ClientError (access denied, validation, ...) propagates on the first
    attempt. A call still throttled after the last try raises ThrottlingError,
    which is a ClientError, so callers handle it like any other AWS error.
    """
    def decorator(func):
        @functools.wraps(func)
        def mark_throttling(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ThrottlingError:
                raise
            except ClientError as e:
                if e.response.get('Error', {}).get('Code') in THROTTLING_CODES:
                    raise ThrottlingError(e.response, e.operation_name) from e
                raise

        return retry(exceptions=ThrottlingError, tries=tries, delay=delay, backoff=backoff)(mark_throttling)
    return decorator


class AWSWrapper:
    """
    Wrapper class for AWS session and client creation.

    Clients carry bounded connect/read timeouts and no client-side retries, so a
    stalled AWS endpoint cannot hold a control-loop tick for longer than
    `request_timeout` seconds per call; the loop retries on the next period.
    """

    def __init__(self, aws_access_key_id: str = None, aws_secret_access_key: str = None,
                 aws_session_token: str = None, sso_profile_name: str = None,
                 region_name: str = REGION, request_timeout: float = REQUEST_TIMEOUT):
        self._region_name = region_name
        self._request_timeout = request_timeout
        self._session = self._create_boto_session(aws_access_key_id, aws_secret_access_key,
                                                  aws_session_token, sso_profile_name)

    @property
    def region_name(self) -> str:
        return self._region_name

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def _create_boto_session(self, aws_access_key_id: str = None, aws_secret_access_key: str = None,
                             aws_session_token: str = None, sso_profile_name: str = None):
        logging.debug("Creating boto3 session via " + ("SSO profile name" if sso_profile_name else "AWS access key"))
        return boto3.session.Session(profile_name=sso_profile_name, region_name=self._region_name) \
            if sso_profile_name else boto3.session.Session(aws_access_key_id, aws_secret_access_key,
                                                           aws_session_token, region_name=self._region_name)

    def default_client_config(self) -> Config:
        return Config(
            connect_timeout=self._request_timeout,
            read_timeout=self._request_timeout,
            retries={'mode': 'standard', 'total_max_attempts': 1}
        )

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def create_aws_client(self, service_name: str, region_name: str = None, config=None):
        """
        Create a boto3 client with bounded timeouts.

        Args:
            service_name: AWS service name ('autoscaling', 'cloudwatch', 'sqs', etc.)
            region_name: Optional AWS region override
            config: Optional botocore configuration replacing the default timeouts

        Returns:
            Boto3 client for the requested service
        """
        logging.debug(f'creating aws client for: {service_name}')
        return self._session.client(service_name=service_name, region_name=region_name,
                                    config=config or self.default_client_config())

    @staticmethod
    def get_time_now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def get_time_minus_minutes(minutes: float) -> datetime:
        return AWSWrapper.get_time_now() - timedelta(minutes=minutes)
