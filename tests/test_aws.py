"""Tests for client creation and role assumption in ClientFactory."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import boto3
import pytest

from fakes import DEV_ID, MANAGEMENT_ID, client_error
from foundation_bootstrap.aws import CLIENT_CONFIG, ClientFactory
from foundation_bootstrap.errors import PermissionDenied


class _FakeSTSClient:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.assume_calls: list[dict] = []

    def get_caller_identity(self) -> dict:
        return {"Account": MANAGEMENT_ID}

    def assume_role(self, **kwargs) -> dict:
        self.assume_calls.append(kwargs)
        if self.fail:
            raise client_error("AccessDenied", "not authorized", "AssumeRole")
        return {
            "Credentials": {
                "AccessKeyId": "ASIATESTKEY",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
            }
        }


class _RecordingSession:
    """Stands in for boto3.Session; counts concurrent client() calls."""

    def __init__(self, sts: _FakeSTSClient | None = None) -> None:
        self.sts = sts or _FakeSTSClient()
        self.calls: list[tuple] = []
        self.active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()

    def client(self, service: str, region_name: str | None = None, config=None):
        with self._count_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(0.001)
        with self._count_lock:
            self.active -= 1
            self.calls.append((service, region_name, config))
        if service == "sts":
            return self.sts
        return object()


class TestClientFactory:
    def test_management_client_uses_region_and_retry_config(self) -> None:
        session = _RecordingSession()
        factory = ClientFactory("eu-west-1", MANAGEMENT_ID, session=session)

        factory.management("s3")
        factory.management("organizations", region="us-east-1")

        assert session.calls == [("s3", "eu-west-1", CLIENT_CONFIG), ("organizations", "us-east-1", CLIENT_CONFIG)]

    def test_clients_are_never_created_concurrently(self) -> None:
        session = _RecordingSession()
        factory = ClientFactory("us-east-1", MANAGEMENT_ID, session=session)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: factory.management("s3"), range(32)))

        assert len(session.calls) == 32
        assert session.max_active == 1

    def test_caller_account_id(self) -> None:
        factory = ClientFactory("us-east-1", session=_RecordingSession())

        assert factory.caller_account_id() == MANAGEMENT_ID

    def test_management_account_uses_own_credentials(self) -> None:
        session = _RecordingSession()
        factory = ClientFactory("us-east-1", MANAGEMENT_ID, session=session)

        assert factory.account_session(MANAGEMENT_ID) is session
        assert session.sts.assume_calls == []

    def test_member_session_is_assumed_once(self) -> None:
        session = _RecordingSession()
        factory = ClientFactory("us-east-1", MANAGEMENT_ID, session=session)

        first = factory.account_session(DEV_ID)
        second = factory.account_session(DEV_ID)

        assert first is second
        assert isinstance(first, boto3.Session)
        assert [c["RoleArn"] for c in session.sts.assume_calls] == [
            f"arn:aws:iam::{DEV_ID}:role/OrganizationAccountAccessRole"
        ]

    def test_assume_passes_external_id(self) -> None:
        session = _RecordingSession()
        factory = ClientFactory("us-east-1", MANAGEMENT_ID, session=session)

        factory.assume(f"arn:aws:iam::{DEV_ID}:role/Deploy", external_id="github-actions-acme")

        assert session.sts.assume_calls[0]["ExternalId"] == "github-actions-acme"

    def test_assume_failure_is_translated(self) -> None:
        factory = ClientFactory("us-east-1", MANAGEMENT_ID, session=_RecordingSession(_FakeSTSClient(fail=True)))

        with pytest.raises(PermissionDenied):
            factory.account_session(DEV_ID)
