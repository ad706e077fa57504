"""
Session and client handling.

The management account is reached with the caller's own credentials;
member accounts through OrganizationAccountAccessRole. Assumed sessions are
cached per account so fan-out workers share one set of credentials.

boto3 sessions are not thread-safe, clients are: every client is created
under one lock and only clients are handed to workers.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from . import naming, output
from .config import BootstrapConfig
from .errors import translate_client_error

CLIENT_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})
SESSION_NAME = "foundation-bootstrap"


class ClientFactory:
    """Hands out boto3 clients for the management and member accounts."""

    def __init__(self, region: str, management_account_id: Optional[str] = None, session=None):
        self.region = region
        self.management_account_id = management_account_id
        self._session = session or boto3.Session(region_name=region)
        self._account_sessions = {}
        self._lock = threading.Lock()
        self._client_lock = threading.Lock()

    def _client(self, session, service: str, region: Optional[str] = None):
        with self._client_lock:
            return session.client(service, region_name=region or self.region, config=CLIENT_CONFIG)

    def management(self, service: str, region: Optional[str] = None):
        return self._client(self._session, service, region)

    def caller_account_id(self) -> str:
        try:
            return self.management("sts").get_caller_identity()["Account"]
        except ClientError as e:
            raise translate_client_error(e) from e

    def assume(
        self,
        role_arn: str,
        session_name: str = SESSION_NAME,
        external_id: Optional[str] = None,
        duration: int = 900,
        source=None,
    ):
        """Assume role_arn and return a boto3 Session for it."""
        sts_client = self._client(source or self._session, "sts")
        kwargs = {
            "RoleArn": role_arn,
            "RoleSessionName": session_name,
            "DurationSeconds": duration,
        }
        if external_id:
            kwargs["ExternalId"] = external_id
        try:
            response = sts_client.assume_role(**kwargs)
        except ClientError as e:
            raise translate_client_error(e) from e
        credentials = response["Credentials"]
        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.region,
        )

    def account_session(self, account_id: str):
        if account_id == self.management_account_id:
            return self._session
        with self._lock:
            session = self._account_sessions.get(account_id)
            if session is None:
                output.debug(f"Assuming {naming.ORG_ACCESS_ROLE} in {account_id}")
                session = self.assume(
                    naming.role_arn(account_id, naming.ORG_ACCESS_ROLE),
                    session_name=f"{SESSION_NAME}-{account_id}",
                    duration=3600,
                )
                self._account_sessions[account_id] = session
            return session

    def account(self, account_id: str, service: str, region: Optional[str] = None):
        return self._client(self.account_session(account_id), service, region)

    def session_client(self, session, service: str):
        return self._client(session, service)


@dataclass(frozen=True)
class BootstrapContext:
    """Everything a phase needs: configuration, clients and a clock."""

    config: BootstrapConfig
    clients: ClientFactory
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def management_account_id(self) -> str:
        return self.config.management_account_id or ""


def build_context(config: BootstrapConfig, session=None) -> BootstrapContext:
    """Create clients and resolve the management account ID if not configured."""
    clients = ClientFactory(config.region, config.management_account_id, session=session)
    if not config.management_account_id:
        account_id = clients.caller_account_id()
        clients.management_account_id = account_id
        config = config.with_management_account(account_id)
    return BootstrapContext(config=config, clients=clients)
