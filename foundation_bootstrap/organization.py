"""
Organization Manager.

Ensures the organization and its OU hierarchy (root -> Workloads -> project
OU) exist, creates or adopts one member account per environment, waits for
each to become ACTIVE and persists the account map to accounts.json.
"""

import json
from pathlib import Path
from typing import Optional

from botocore.exceptions import ClientError

from . import naming, output
from .aws import BootstrapContext
from .errors import (
    AlreadyExistsError,
    NotFoundError,
    PermissionDenied,
    ProviderError,
    error_code,
    error_message,
    translate_client_error,
)
from .models import Account, AccountStatus, EnsureResult, PhaseResult, TargetResult, fan_out
from .retry import poll_until, with_retry

ACCOUNT_MAP_FILENAME = "accounts.json"
RECOVERABLE_CREATE_FAILURES = {"EMAIL_ALREADY_EXISTS", "DUPLICATE_ACCOUNT_NAME"}


def _org(ctx: BootstrapContext):
    return ctx.clients.management("organizations")


def ensure_organization(ctx: BootstrapContext) -> EnsureResult:
    """Ensure an organization with all features exists."""
    org_client = _org(ctx)
    try:
        org = org_client.describe_organization()["Organization"]
        output.success(f"Organization exists: {org['Id']}")
        if org.get("FeatureSet") != "ALL":
            output.warn(f"Feature set is {org.get('FeatureSet')}, not ALL")
        return EnsureResult(resource=org["Id"])
    except ClientError as e:
        if error_code(e) != "AWSOrganizationsNotInUseException":
            raise translate_client_error(e) from e

    if ctx.dry_run:
        output.dry_run("create organization with feature set ALL")
        return EnsureResult(resource="", created=True)

    org = org_client.create_organization(FeatureSet="ALL")["Organization"]
    output.success(f"Created organization: {org['Id']}")
    return EnsureResult(resource=org["Id"], created=True)


def get_root_id(ctx: BootstrapContext) -> Optional[str]:
    try:
        roots = _org(ctx).list_roots()["Roots"]
    except ClientError as e:
        if ctx.dry_run and error_code(e) == "AWSOrganizationsNotInUseException":
            return None
        raise translate_client_error(e) from e
    return roots[0]["Id"] if roots else None


def find_ou(ctx: BootstrapContext, parent_id: str, name: str) -> Optional[str]:
    paginator = _org(ctx).get_paginator("list_organizational_units_for_parent")
    for page in paginator.paginate(ParentId=parent_id):
        for ou in page["OrganizationalUnits"]:
            if ou["Name"] == name:
                return ou["Id"]
    return None


def ensure_ou(ctx: BootstrapContext, parent_id: Optional[str], name: str) -> EnsureResult:
    """Ensure an OU named name exists directly under parent_id."""
    if parent_id:
        ou_id = find_ou(ctx, parent_id, name)
        if ou_id:
            output.success(f"OU exists: {name} ({ou_id})")
            return EnsureResult(resource=ou_id)

    if ctx.dry_run:
        output.dry_run(f"create OU: {name}")
        return EnsureResult(resource="", created=True)

    try:
        ou = with_retry(
            lambda: _org(ctx).create_organizational_unit(ParentId=parent_id, Name=name),
            ctx.config.transient_backoff,
            ctx.sleep,
            f"create OU {name}",
        )["OrganizationalUnit"]
    except AlreadyExistsError:
        ou_id = find_ou(ctx, parent_id, name)
        output.success(f"OU exists: {name} ({ou_id})")
        return EnsureResult(resource=ou_id)

    output.success(f"Created OU: {name} ({ou['Id']})")
    return EnsureResult(resource=ou["Id"], created=True)


def ensure_ou_hierarchy(ctx: BootstrapContext) -> dict:
    """Ensure root -> Workloads -> project OU and return their IDs."""
    root_id = get_root_id(ctx)
    workloads = ensure_ou(ctx, root_id, ctx.config.workloads_ou_name)
    project = ensure_ou(ctx, workloads.resource or None, ctx.config.project_ou_name)
    return {
        "root": root_id,
        "workloads": workloads.resource or None,
        "project": project.resource or None,
    }


def find_account(ctx: BootstrapContext, email: str, name: str) -> Optional[dict]:
    """Find an account by email, falling back to name."""
    by_name = None
    paginator = _org(ctx).get_paginator("list_accounts")
    for page in paginator.paginate():
        for account in page["Accounts"]:
            if account.get("Email", "").lower() == email.lower():
                return account
            if account.get("Name") == name and by_name is None:
                by_name = account
    return by_name


def account_status(ctx: BootstrapContext, account_id: str) -> AccountStatus:
    try:
        account = _org(ctx).describe_account(AccountId=account_id)["Account"]
    except ClientError as e:
        raise translate_client_error(e) from e
    return AccountStatus.from_provider(account.get("State") or account.get("Status", ""))


def create_account(ctx: BootstrapContext, account: Account) -> Account:
    """Request a new account and poll until the request resolves."""
    org_client = _org(ctx)
    output.info(f"Creating account {account.name} ({account.email})")
    response = with_retry(
        lambda: org_client.create_account(
            Email=account.email,
            AccountName=account.name,
            RoleName=naming.ORG_ACCESS_ROLE,
            IamUserAccessToBilling="ALLOW",
        ),
        ctx.config.transient_backoff,
        ctx.sleep,
        f"create account {account.name}",
    )
    request_id = response["CreateAccountStatus"]["Id"]
    account.status = AccountStatus.CREATING
    output.debug(f"Create request {request_id} submitted")

    def check():
        status = org_client.describe_create_account_status(CreateAccountRequestId=request_id)[
            "CreateAccountStatus"
        ]
        state = status["State"]
        if state == "SUCCEEDED":
            return {"account_id": status["AccountId"]}
        if state == "FAILED":
            reason = status.get("FailureReason", "UNKNOWN")
            if reason in RECOVERABLE_CREATE_FAILURES:
                existing = find_account(ctx, account.email, account.name)
                if existing:
                    output.warn(f"{account.name}: {reason}, reusing {existing['Id']}")
                    return {"account_id": existing["Id"]}
            raise ProviderError(f"Account creation failed for {account.name}: {reason}", code=reason)
        return None

    result = poll_until(
        check,
        ctx.config.account_creation_backoff,
        ctx.sleep,
        f"account {account.name} to be created",
    )
    account.account_id = result["account_id"]
    output.success(f"Created account {account.name}: {account.account_id}")
    return account


def move_account_to_ou(ctx: BootstrapContext, account_id: str, ou_id: str) -> bool:
    """Move the account under ou_id. Returns True if a move happened."""
    org_client = _org(ctx)
    parents = org_client.list_parents(ChildId=account_id)["Parents"]
    current = parents[0]["Id"] if parents else None
    if current == ou_id:
        output.debug(f"{account_id} already in {ou_id}")
        return False
    if ctx.dry_run:
        output.dry_run(f"move account {account_id} from {current} to {ou_id}")
        return True
    with_retry(
        lambda: org_client.move_account(
            AccountId=account_id, SourceParentId=current, DestinationParentId=ou_id
        ),
        ctx.config.transient_backoff,
        ctx.sleep,
        f"move account {account_id}",
    )
    output.success(f"Moved account {account_id} to {ou_id}")
    return True


def wait_for_account_active(ctx: BootstrapContext, account_id: str) -> AccountStatus:
    """Poll until the account is ACTIVE; suspended or closing accounts fail fast."""

    def check():
        status = account_status(ctx, account_id)
        if status.closed:
            raise ProviderError(f"Account {account_id} is {status.value}", code=status.value)
        return status if status == AccountStatus.ACTIVE else None

    return poll_until(
        check,
        ctx.config.account_active_backoff,
        ctx.sleep,
        f"account {account_id} to become ACTIVE",
    )


def planned_account(ctx: BootstrapContext, environment: str) -> Account:
    config = ctx.config
    return Account(
        name=naming.account_name(config.project_short_name, environment),
        email=naming.account_email(
            config.project_short_name, environment, config.account_email_domain
        ),
        environment=environment,
    )


def ensure_account(ctx: BootstrapContext, environment: str, ou_id: Optional[str]) -> Account:
    """Find or create the account for one environment and place it in ou_id."""
    account = planned_account(ctx, environment)
    existing = find_account(ctx, account.email, account.name)

    if existing:
        account.account_id = existing["Id"]
        account.status = AccountStatus.from_provider(existing.get("State") or existing.get("Status", ""))
        if account.status.closed:
            raise ProviderError(
                f"Account {account.name} ({account.account_id}) is {account.status.value}",
                code=account.status.value,
            )
        output.success(f"Account exists: {account.name} ({account.account_id})")
    elif ctx.dry_run:
        output.dry_run(f"create account {account.name} ({account.email})")
        return account
    else:
        create_account(ctx, account)

    if ou_id:
        move_account_to_ou(ctx, account.account_id, ou_id)
        account.ou_id = ou_id

    if account.status != AccountStatus.ACTIVE:
        if ctx.dry_run:
            output.dry_run(f"wait for account {account.account_id} to become ACTIVE")
        else:
            account.status = wait_for_account_active(ctx, account.account_id)
            output.success(f"Account {account.account_id} is ACTIVE")
    return account


def adopt_accounts(ctx: BootstrapContext) -> PhaseResult:
    """Adoption mode: account IDs are supplied, nothing is created."""
    result = PhaseResult(name="accounts")
    for env in ctx.config.environments:
        account_id = ctx.config.account_ids[env]
        output.success(f"Adopting {env} account: {account_id}")
        result.add(TargetResult(target=env, succeeded=True, details={"account_id": account_id, "adopted": True}))
    return result


def ensure_accounts(ctx: BootstrapContext, ou_id: Optional[str]) -> PhaseResult:
    """Best-effort pass over every environment's account."""
    if ctx.config.adoption_mode:
        return adopt_accounts(ctx)

    def task(env):
        def run():
            if ctx.config.account_ids.get(env):
                account_id = ctx.config.account_ids[env]
                output.success(f"Adopting {env} account: {account_id}")
                return {"account_id": account_id, "adopted": True}
            account = ensure_account(ctx, env, ou_id)
            return {
                "account_id": account.account_id,
                "name": account.name,
                "email": account.email,
                "status": account.status.value,
            }

        return run

    targets = [(env, task(env)) for env in ctx.config.environments]
    return fan_out("accounts", targets, ctx.config.max_workers)


def account_map_from(phase: PhaseResult) -> dict:
    return {
        r.target: r.details["account_id"]
        for r in phase.results
        if r.succeeded and r.details.get("account_id")
    }


def save_account_map(output_dir: Path, management_account_id: str, accounts: dict) -> Path:
    """Write accounts.json, keeping entries this run did not resolve."""
    output_dir = Path(output_dir)
    previous = load_account_map(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / ACCOUNT_MAP_FILENAME
    data = {naming.MANAGEMENT: management_account_id}
    data.update((env, account_id) for env, account_id in previous.items() if env != naming.MANAGEMENT)
    data.update(accounts)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    return path


def load_account_map(output_dir: Path) -> dict:
    """Read accounts.json. Returns {} if it has not been written yet."""
    path = Path(output_dir) / ACCOUNT_MAP_FILENAME
    if not path.exists():
        return {}
    with open(path) as f:
        return json.load(f)


def resolve_account_map(ctx: BootstrapContext) -> dict:
    """Account IDs per environment from configuration, then accounts.json."""
    persisted = load_account_map(ctx.config.output_dir)
    accounts = {}
    for env in ctx.config.environments:
        account_id = ctx.config.account_ids.get(env) or persisted.get(env)
        if account_id:
            accounts[env] = account_id
    return accounts


CLOSE_ERROR_HINTS = {
    "TooManyRequestsException": "closure quota reached (at most 10% of member accounts per 30 days)",
    "ConstraintViolationException": "closure quota reached (at most 10% of member accounts per 30 days)",
    "ConflictException": "account has active marketplace subscriptions or a pending operation",
    "AccessDeniedException": "caller lacks organizations:CloseAccount",
    "AccessDenied": "caller lacks organizations:CloseAccount",
}


def close_member_accounts(ctx: BootstrapContext, accounts: dict) -> PhaseResult:
    """Close member accounts. Irreversible for 90 days; only run on explicit request."""
    result = PhaseResult(name="close-accounts")
    org_client = _org(ctx)
    for env, account_id in accounts.items():
        if account_id == ctx.management_account_id:
            output.warn(f"Refusing to close the management account ({account_id})")
            result.add(TargetResult(target=env, succeeded=False, error="management account"))
            continue
        try:
            status = account_status(ctx, account_id)
        except NotFoundError as e:
            output.warn(f"{env}: account {account_id} not found")
            result.add(TargetResult(target=env, succeeded=True, details={"skipped": str(e)}))
            continue
        except PermissionDenied as e:
            output.error(f"{env}: {e}")
            result.add(TargetResult(target=env, succeeded=False, error=str(e)))
            continue

        if status.closed:
            output.success(f"{env} account {account_id} already {status.value}")
            result.add(TargetResult(target=env, succeeded=True, details={"status": status.value}))
            continue

        if ctx.dry_run:
            output.dry_run(f"close account {env} ({account_id})")
            result.add(TargetResult(target=env, succeeded=True, details={"dry_run": True}))
            continue

        try:
            org_client.close_account(AccountId=account_id)
        except ClientError as e:
            code = error_code(e)
            hint = CLOSE_ERROR_HINTS.get(code, error_message(e))
            output.error(f"Failed to close {env} ({account_id}): {code}: {hint}")
            result.add(TargetResult(target=env, succeeded=False, error=f"{code}: {hint}"))
            continue
        output.success(f"Closed {env} account {account_id} (90-day recovery period)")
        result.add(
            TargetResult(target=env, succeeded=True, details={"status": AccountStatus.PENDING_CLOSURE.value})
        )
    return result


def delete_ou_structure(ctx: BootstrapContext) -> PhaseResult:
    """Delete the project OU, then Workloads, each only if empty."""
    result = PhaseResult(name="organization")
    org_client = _org(ctx)
    root_id = get_root_id(ctx)
    if not root_id:
        return result
    workloads_id = find_ou(ctx, root_id, ctx.config.workloads_ou_name)
    if not workloads_id:
        output.info(f"OU {ctx.config.workloads_ou_name} not found")
        return result
    project_id = find_ou(ctx, workloads_id, ctx.config.project_ou_name)

    removed = set()
    for name, ou_id in ((ctx.config.project_ou_name, project_id), (ctx.config.workloads_ou_name, workloads_id)):
        if not ou_id:
            continue
        accounts = org_client.list_accounts_for_parent(ParentId=ou_id).get("Accounts", [])
        children = [
            ou
            for ou in org_client.list_organizational_units_for_parent(ParentId=ou_id).get(
                "OrganizationalUnits", []
            )
            if ou["Id"] not in removed
        ]
        # suspended accounts still count as children of the OU
        if accounts or children:
            output.warn(f"OU {name} is not empty, leaving it in place")
            result.add(TargetResult(target=f"ou:{name}", succeeded=True, details={"kept": True}))
            # parent cannot be emptied while this one remains
            break
        if ctx.dry_run:
            output.dry_run(f"delete OU {name} ({ou_id})")
            result.add(TargetResult(target=f"ou:{name}", succeeded=True, details={"dry_run": True}))
            removed.add(ou_id)
            continue
        try:
            org_client.delete_organizational_unit(OrganizationalUnitId=ou_id)
        except ClientError as e:
            err = translate_client_error(e)
            output.error(f"Failed to delete OU {name}: {err}")
            result.add(TargetResult(target=f"ou:{name}", succeeded=False, error=str(err)))
            break
        output.success(f"Deleted OU {name}")
        removed.add(ou_id)
        result.add(TargetResult(target=f"ou:{name}", succeeded=True, details={"deleted": ou_id}))
    return result
