"""Resource model and per-target result accumulation."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from . import naming, output
from .errors import BootstrapError, describe, translate


class AccountStatus(str, Enum):
    REQUESTED = "REQUESTED"
    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING_CLOSURE = "PENDING_CLOSURE"

    @classmethod
    def from_provider(cls, value: str) -> "AccountStatus":
        """Map Organizations account or create-request status onto the lifecycle."""
        mapping = {
            "ACTIVE": cls.ACTIVE,
            "SUCCEEDED": cls.ACTIVE,
            "IN_PROGRESS": cls.CREATING,
            "SUSPENDED": cls.SUSPENDED,
            "PENDING_CLOSURE": cls.PENDING_CLOSURE,
        }
        return mapping.get(value, cls.REQUESTED)

    @property
    def closed(self) -> bool:
        return self in (AccountStatus.SUSPENDED, AccountStatus.PENDING_CLOSURE)


@dataclass
class Account:
    name: str
    email: str
    environment: str
    account_id: Optional[str] = None
    ou_id: Optional[str] = None
    status: AccountStatus = AccountStatus.REQUESTED


class RolePurpose(str, Enum):
    DEPLOYMENT = "deployment"
    READONLY_CONSOLE = "readonly"
    CENTRAL_BOOTSTRAP = "central"


@dataclass(frozen=True)
class RoleSpec:
    name: str
    account_id: str
    purpose: RolePurpose
    environment: str
    trust_template: str
    permission_template: Optional[str]
    description: str
    policy_name: str = naming.PERMISSION_POLICY_NAME
    managed_policies: tuple = ()

    @property
    def arn(self) -> str:
        return naming.role_arn(self.account_id, self.name)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.account_id})"


@dataclass(frozen=True)
class BackendSpec:
    environment: str
    account_id: str
    bucket: str
    lock_table: str
    kms_alias: str
    region: str
    state_key: str

    @classmethod
    def derive(cls, project_name: str, environment: str, account_id: str, region: str):
        return cls(
            environment=environment,
            account_id=account_id,
            bucket=naming.state_bucket(project_name, environment, account_id),
            lock_table=naming.lock_table(project_name, environment),
            kms_alias=naming.kms_alias(project_name, environment, account_id),
            region=region,
            state_key=naming.state_key(environment),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EnsureResult:
    """Outcome of an idempotent ensure_* call."""

    resource: str
    created: bool = False
    changed: bool = False
    details: dict = field(default_factory=dict)

    @property
    def action(self) -> str:
        if self.created:
            return "created"
        if self.changed:
            return "updated"
        return "unchanged"


@dataclass
class TargetResult:
    target: str
    succeeded: bool
    details: dict = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "succeeded": self.succeeded,
            "details": self.details,
            "error": self.error,
        }


@dataclass
class PhaseResult:
    name: str
    results: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self.results)

    @property
    def failed(self) -> list:
        return [r for r in self.results if not r.succeeded]

    def add(self, result: TargetResult) -> None:
        self.results.append(result)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "succeeded": self.succeeded,
            "targets": [r.to_dict() for r in self.results],
        }


def run_target(target: str, fn: Callable[[], dict]) -> TargetResult:
    """Run one target, turning known failures into a failed TargetResult.

    Programming errors are not caught.
    """
    try:
        details = fn() or {}
        return TargetResult(target=target, succeeded=True, details=details)
    except (ClientError, BotoCoreError) as e:
        err = translate(e)
        output.error(f"{target}: {describe(err)}")
        return TargetResult(target=target, succeeded=False, error=describe(err))
    except BootstrapError as e:
        output.error(f"{target}: {describe(e)}")
        return TargetResult(target=target, succeeded=False, error=describe(e))


def fan_out(phase: str, targets: list, max_workers: int) -> PhaseResult:
    """Run (name, fn) targets concurrently and collect every result in order."""
    return fan_out_groups(
        phase, [lambda name=name, fn=fn: [run_target(name, fn)] for name, fn in targets], max_workers
    )


def fan_out_groups(phase: str, groups: list, max_workers: int) -> PhaseResult:
    """Run groups concurrently; each returns a list of TargetResults run in sequence.

    Used when targets inside one account depend on each other but accounts
    are independent.
    """
    result = PhaseResult(name=phase)
    if not groups:
        return result
    workers = max(1, min(max_workers, len(groups)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(group) for group in groups]
        for future in futures:
            for target_result in future.result():
                result.add(target_result)
    return result
