"""
Destroyer.

Tears down what bootstrap created, in reverse dependency order:

    lock table -> bucket contents -> bucket -> key alias/key -> roles
    -> OIDC providers -> central bucket -> (opt-in) account closure
    -> organizational units

Every category is attempted even when an earlier one failed.
"""

from dataclasses import dataclass
from typing import Callable

from botocore.exceptions import BotoCoreError, ClientError

from . import naming, output
from .aws import BootstrapContext
from .backends import backend_spec, destroy_backend, destroy_central_bucket
from .errors import BootstrapError, describe
from .identity import delete_oidc_provider, delete_role
from .models import PhaseResult, TargetResult, fan_out_groups, run_target
from .organization import account_status, close_member_accounts, delete_ou_structure

CONFIRMATION_WORD = "destroy"


@dataclass(frozen=True)
class DestroyScope:
    backends: bool = True
    roles: bool = True
    oidc: bool = True
    central_bucket: bool = True
    organization: bool = True
    close_accounts: bool = False
    environments: tuple = ()

    @classmethod
    def from_flags(
        cls,
        backends_only: bool = False,
        roles_only: bool = False,
        oidc_only: bool = False,
        central_bucket_only: bool = False,
        close_accounts: bool = False,
        environments=(),
    ) -> "DestroyScope":
        """Build a scope from command-line selectors.

        With no *-only selector every category is included. Limiting the
        run to a subset of environments leaves management-account resources
        alone.
        """
        selected = any((backends_only, roles_only, oidc_only, central_bucket_only))
        environments = tuple(environments or ())
        whole = not environments
        return cls(
            backends=backends_only or not selected,
            roles=roles_only or not selected,
            oidc=oidc_only or not selected,
            central_bucket=(central_bucket_only or not selected) and whole,
            organization=not selected and whole,
            close_accounts=close_accounts,
            environments=environments,
        )

    @property
    def includes_management(self) -> bool:
        return not self.environments

    def categories(self) -> list:
        labels = []
        if self.backends:
            labels.append("Terraform backends (lock tables, state buckets, KMS keys)")
        if self.roles:
            labels.append("GitHub Actions and read-only console roles")
        if self.oidc:
            labels.append("OIDC providers")
        if self.central_bucket:
            labels.append("Central foundation state bucket")
        if self.close_accounts:
            labels.append("Member AWS accounts (PERMANENT - 90 day recovery)")
        if self.organization:
            labels.append("Workloads and project OUs (only if empty)")
        return labels


def confirm_destroy(
    ctx: BootstrapContext,
    scope: DestroyScope,
    accounts: dict,
    force: bool = False,
    prompt: Callable[[str], str] = input,
) -> bool:
    """Require the operator to type 'destroy' unless forced or dry-running."""
    if force or ctx.dry_run:
        return True
    output.warn("You are about to destroy bootstrap infrastructure!")
    output.info("This will delete:")
    for label in scope.categories():
        output.info(f"  - {label}")
    output.info("Accounts that will be affected:")
    for env, account_id in accounts.items():
        output.info(f"  - {env}: {account_id}")
    answer = prompt(f"Type '{CONFIRMATION_WORD}' to confirm: ")
    return answer.strip() == CONFIRMATION_WORD


def select_accounts(ctx: BootstrapContext, scope: DestroyScope, accounts: dict) -> dict:
    environments = scope.environments or ctx.config.environments
    return {env: accounts[env] for env in environments if accounts.get(env)}


def live_accounts(ctx: BootstrapContext, accounts: dict) -> tuple:
    """Split accounts into those we can still operate in and those being closed."""
    live, skipped = {}, {}
    for env, account_id in accounts.items():
        try:
            status = account_status(ctx, account_id)
        except BootstrapError as e:
            output.warn(f"Could not read status of {env} ({account_id}): {describe(e)}")
            live[env] = account_id
            continue
        if status.closed:
            output.warn(f"Skipping {env} ({account_id}): account is {status.value}")
            skipped[env] = status.value
        else:
            live[env] = account_id
    return live, skipped


def destroy_backends(ctx: BootstrapContext, accounts: dict) -> PhaseResult:
    groups = [
        lambda backend=backend_spec(ctx, env, account_id): destroy_backend(ctx, backend)
        for env, account_id in accounts.items()
    ]
    return fan_out_groups("destroy-backends", groups, ctx.config.max_workers)


def destroy_roles(ctx: BootstrapContext, accounts: dict, include_management: bool) -> PhaseResult:
    short = ctx.config.project_short_name
    targets = []
    for env, account_id in accounts.items():
        for role_name in (naming.deployment_role(short, env), naming.readonly_role(short, env)):
            targets.append((env, account_id, role_name))
    if include_management and ctx.management_account_id:
        targets.append((naming.MANAGEMENT, ctx.management_account_id, naming.central_role(short)))

    def group(env, account_id, role_name):
        def run():
            iam = ctx.clients.account(account_id, "iam")
            return {"deleted": delete_role(ctx, iam, role_name)}

        return lambda: [run_target(f"{env}/{role_name}", run)]

    return fan_out_groups(
        "destroy-roles", [group(*target) for target in targets], ctx.config.max_workers
    )


def destroy_oidc_providers(ctx: BootstrapContext, accounts: dict, include_management: bool) -> PhaseResult:
    targets = dict(accounts)
    if include_management and ctx.management_account_id:
        targets[naming.MANAGEMENT] = ctx.management_account_id

    def group(env, account_id):
        def run():
            iam = ctx.clients.account(account_id, "iam")
            return {"deleted": delete_oidc_provider(ctx, iam, account_id)}

        return lambda: [run_target(f"{env}/oidc-provider", run)]

    return fan_out_groups(
        "destroy-oidc", [group(env, account_id) for env, account_id in targets.items()], ctx.config.max_workers
    )


def destroy_foundation(ctx: BootstrapContext, scope: DestroyScope, accounts: dict) -> list:
    """Run every selected category in reverse dependency order."""
    phases = []
    selected = select_accounts(ctx, scope, accounts)
    live, skipped = live_accounts(ctx, selected)

    total = sum(
        [scope.backends, scope.roles, scope.oidc, scope.central_bucket, scope.close_accounts, scope.organization]
    )
    number = 0

    def next_step(title):
        nonlocal number
        number += 1
        output.step(number, total, title)

    if scope.backends:
        next_step("Destroying Terraform backends")
        phase = destroy_backends(ctx, live)
        for env, status in skipped.items():
            phase.add(TargetResult(target=f"{env}/backend", succeeded=True, details={"skipped": status}))
        phases.append(phase)

    if scope.roles:
        next_step("Deleting IAM roles")
        phases.append(destroy_roles(ctx, live, scope.includes_management))

    if scope.oidc:
        next_step("Deleting OIDC providers")
        phases.append(destroy_oidc_providers(ctx, live, scope.includes_management))

    if scope.central_bucket:
        next_step("Deleting central foundation state bucket")
        phase = PhaseResult(name="destroy-central-bucket")
        phase.add(
            run_target(
                naming.central_bucket(ctx.config.project_name, ctx.management_account_id),
                lambda: {"deleted": destroy_central_bucket(ctx)},
            )
        )
        phases.append(phase)

    if scope.close_accounts:
        next_step("Closing member AWS accounts")
        phases.append(close_member_accounts(ctx, selected))

    if scope.organization:
        next_step("Removing organizational units")
        try:
            phases.append(delete_ou_structure(ctx))
        except (ClientError, BotoCoreError, BootstrapError) as e:
            output.error(f"Failed to remove organizational units: {describe(e)}")
            phase = PhaseResult(name="organization")
            phase.add(TargetResult(target="organization", succeeded=False, error=describe(e)))
            phases.append(phase)

    return phases
