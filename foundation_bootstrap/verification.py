"""
Verification Engine.

Runs a fixed checklist against what bootstrap should have produced and
returns a VerificationReport. The only writes are a probe object and a
probe lock record, both removed again within the same check.
"""

import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from . import naming, output
from .aws import BootstrapContext
from .backends import backend_spec
from .errors import BootstrapError, describe
from .identity import get_role, role_specs
from .models import AccountStatus, RolePurpose
from .organization import account_status, find_ou, get_root_id

PROBE_PREFIX = ".bootstrap-verify"
PROBE_BODY = b"foundation-bootstrap verification probe"


@dataclass
class CheckResult:
    name: str
    target: str
    passed: bool
    reason: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.name}: {self.target}"

    def to_dict(self) -> dict:
        return {"check": self.name, "target": self.target, "passed": self.passed, "reason": self.reason}


@dataclass
class VerificationReport:
    checks: list = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    @property
    def failures(self) -> list:
        return [c for c in self.checks if not c.passed]

    def add(self, check: CheckResult) -> CheckResult:
        self.checks.append(check)
        if check.passed:
            output.success(check.label)
        else:
            output.error(f"{check.label} - {check.reason}")
        return check

    def rows(self) -> list:
        return [(c.label, c.passed) for c in self.checks]

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "total": len(self.checks),
            "failed": len(self.failures),
            "checks": [c.to_dict() for c in self.checks],
        }


def run_check(report: VerificationReport, name: str, target: str, fn: Callable) -> CheckResult:
    """fn returns None on success or a failure reason; errors count as failures."""
    try:
        reason = fn()
    except (ClientError, BotoCoreError, BootstrapError) as e:
        reason = describe(e)
    return report.add(CheckResult(name=name, target=target, passed=reason is None, reason=reason))


def check_organization(ctx: BootstrapContext, report: VerificationReport) -> None:
    def organization():
        org = ctx.clients.management("organizations").describe_organization()["Organization"]
        if org.get("FeatureSet") != "ALL":
            return f"feature set is {org.get('FeatureSet')}, expected ALL"
        return None

    run_check(report, "organization", "present", organization)

    def structure():
        root_id = get_root_id(ctx)
        if not root_id:
            return "organization root not found"
        workloads = find_ou(ctx, root_id, ctx.config.workloads_ou_name)
        if not workloads:
            return f"OU {ctx.config.workloads_ou_name} missing"
        if not find_ou(ctx, workloads, ctx.config.project_ou_name):
            return f"OU {ctx.config.project_ou_name} missing under {ctx.config.workloads_ou_name}"
        return None

    run_check(
        report,
        "ou-structure",
        f"{ctx.config.workloads_ou_name}/{ctx.config.project_ou_name}",
        structure,
    )


def check_accounts(ctx: BootstrapContext, report: VerificationReport, accounts: dict) -> None:
    for env in ctx.config.environments:
        account_id = accounts.get(env)

        def active(account_id=account_id):
            if not account_id:
                return "no account ID known"
            status = account_status(ctx, account_id)
            if status != AccountStatus.ACTIVE:
                return f"account is {status.value}"
            return None

        run_check(report, "account-active", f"{env} ({account_id or 'unknown'})", active)


def check_oidc_providers(ctx: BootstrapContext, report: VerificationReport, accounts: dict) -> None:
    targets = {naming.MANAGEMENT: ctx.management_account_id, **accounts}
    for label, account_id in targets.items():

        def present(account_id=account_id):
            iam = ctx.clients.account(account_id, "iam")
            provider = iam.get_open_id_connect_provider(
                OpenIDConnectProviderArn=naming.oidc_provider_arn(account_id)
            )
            if naming.OIDC_AUDIENCE not in provider.get("ClientIDList", []):
                return f"audience {naming.OIDC_AUDIENCE} not configured"
            return None

        run_check(report, "oidc-provider", f"{label} ({account_id})", present)


def assume_for_check(ctx: BootstrapContext, spec):
    """Assume a role the way its trust policy allows from the management account."""
    external_id = None if spec.purpose == RolePurpose.READONLY_CONSOLE else ctx.config.external_id
    return ctx.clients.assume(
        spec.arn,
        session_name="foundation-bootstrap-verify",
        external_id=external_id,
        duration=900,
    )


def check_roles(ctx: BootstrapContext, report: VerificationReport, accounts: dict) -> dict:
    """Check every role exists and is assumable; returns sessions for deployment roles."""
    sessions = {}
    for spec in role_specs(ctx.config, accounts):

        def present(spec=spec):
            iam = ctx.clients.account(spec.account_id, "iam")
            if get_role(iam, spec.name) is None:
                return "role not found"
            return None

        exists = run_check(report, "role-present", spec.label, present)
        if not exists.passed:
            report.add(CheckResult("role-assumable", spec.label, False, "role not found"))
            continue

        def assumable(spec=spec):
            session = assume_for_check(ctx, spec)
            identity = ctx.clients.session_client(session, "sts").get_caller_identity()
            if identity.get("Account") != spec.account_id:
                return f"assumed identity is in {identity.get('Account')}, expected {spec.account_id}"
            if spec.purpose == RolePurpose.DEPLOYMENT:
                sessions[spec.environment] = session
            return None

        run_check(report, "role-assumable", spec.label, assumable)
    return sessions


def check_backends(ctx: BootstrapContext, report: VerificationReport, accounts: dict, sessions: dict) -> None:
    for env in ctx.config.environments:
        account_id = accounts.get(env)
        if not account_id:
            report.add(CheckResult("backend-config", env, False, "no account ID known"))
            continue
        backend = backend_spec(ctx, env, account_id)

        def configured(backend=backend):
            s3 = ctx.clients.account(backend.account_id, "s3")
            if s3.get_bucket_versioning(Bucket=backend.bucket).get("Status") != "Enabled":
                return "versioning not enabled"
            rules = s3.get_bucket_encryption(Bucket=backend.bucket)["ServerSideEncryptionConfiguration"]["Rules"]
            algorithm = rules[0]["ApplyServerSideEncryptionByDefault"]["SSEAlgorithm"] if rules else None
            if algorithm != "aws:kms":
                return f"default encryption is {algorithm}, expected aws:kms"
            ddb = ctx.clients.account(backend.account_id, "dynamodb")
            status = ddb.describe_table(TableName=backend.lock_table)["Table"]["TableStatus"]
            if status != "ACTIVE":
                return f"lock table is {status}"
            return None

        run_check(report, "backend-config", f"{env} ({backend.bucket})", configured)

        session = sessions.get(env)
        if session is None:
            report.add(
                CheckResult("backend-read-write", f"{env} ({backend.bucket})", False, "deployment role not assumable")
            )
            continue

        def read_write(backend=backend, session=session):
            return probe_backend(ctx, session, backend)

        run_check(report, "backend-read-write", f"{env} ({backend.bucket})", read_write)


def probe_backend(ctx: BootstrapContext, session, backend) -> Optional[str]:
    """Write, read back and delete a probe object and lock record."""
    probe_id = uuid.uuid4().hex
    s3 = ctx.clients.session_client(session, "s3")
    key = f"{PROBE_PREFIX}/{probe_id}"
    put = s3.put_object(Bucket=backend.bucket, Key=key, Body=PROBE_BODY)
    try:
        body = s3.get_object(Bucket=backend.bucket, Key=key)["Body"].read()
    finally:
        version = put.get("VersionId")
        if version:
            s3.delete_object(Bucket=backend.bucket, Key=key, VersionId=version)
        else:
            s3.delete_object(Bucket=backend.bucket, Key=key)
    if body != PROBE_BODY:
        return "probe object read back with different content"

    ddb = ctx.clients.session_client(session, "dynamodb")
    lock_id = f"{PROBE_PREFIX}-{probe_id}"
    ddb.put_item(TableName=backend.lock_table, Item={"LockID": {"S": lock_id}})
    try:
        item = ddb.get_item(TableName=backend.lock_table, Key={"LockID": {"S": lock_id}}, ConsistentRead=True)
    finally:
        ddb.delete_item(TableName=backend.lock_table, Key={"LockID": {"S": lock_id}})
    if "Item" not in item:
        return "probe lock record not readable"
    return None


def verify_foundation(ctx: BootstrapContext, accounts: dict) -> VerificationReport:
    """Run the full checklist. Never raises for a failing check."""
    report = VerificationReport()
    output.section("Verifying organization")
    check_organization(ctx, report)
    output.section("Verifying accounts")
    check_accounts(ctx, report, accounts)
    output.section("Verifying OIDC providers")
    check_oidc_providers(ctx, report, accounts)
    output.section("Verifying roles")
    sessions = check_roles(ctx, report, accounts)
    output.section("Verifying state backends")
    check_backends(ctx, report, accounts, sessions)
    return report
