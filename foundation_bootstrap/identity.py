"""
Identity & Trust Provisioner.

Each workload account gets the GitHub Actions OIDC provider, a deployment
role and a read-only console role. The management account gets the OIDC
provider and the central bootstrap role. Every policy document is rendered
and validated for all accounts before the first IAM call.
"""

import json
from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import ClientError

from . import naming, output
from .aws import BootstrapContext
from .config import BootstrapConfig
from .errors import AlreadyExistsError, error_code, translate_client_error
from .models import EnsureResult, PhaseResult, RolePurpose, RoleSpec, fan_out_groups, run_target
from .retry import with_retry
from .templates import TemplateContext, document_hash, load_template, oidc_subject, parse_document

READONLY_MANAGED_POLICY = "arn:aws:iam::aws:policy/ReadOnlyAccess"
MAX_SESSION_DURATION = 3600


@dataclass(frozen=True)
class RenderedRole:
    spec: RoleSpec
    trust: dict
    permissions: Optional[dict]
    external_id: str

    @property
    def trust_hash(self) -> str:
        return document_hash(self.trust)

    @property
    def permission_hash(self) -> Optional[str]:
        return document_hash(self.permissions) if self.permissions is not None else None


def role_specs(config: BootstrapConfig, accounts: dict) -> list:
    """Roles required for the management account and each workload account."""
    short = config.project_short_name
    specs = []
    if config.management_account_id:
        specs.append(
            RoleSpec(
                name=naming.central_role(short),
                account_id=config.management_account_id,
                purpose=RolePurpose.CENTRAL_BOOTSTRAP,
                environment=naming.MANAGEMENT,
                trust_template="central-trust",
                permission_template="central-permissions",
                description=f"GitHub Actions central bootstrap role for {config.repository}",
            )
        )
    for env in config.environments:
        account_id = accounts.get(env)
        if not account_id:
            continue
        specs.append(
            RoleSpec(
                name=naming.deployment_role(short, env),
                account_id=account_id,
                purpose=RolePurpose.DEPLOYMENT,
                environment=env,
                trust_template="deployment-trust",
                permission_template="deployment-permissions",
                description=f"GitHub Actions deployment role for {env} environment",
            )
        )
        specs.append(
            RoleSpec(
                name=naming.readonly_role(short, env),
                account_id=account_id,
                purpose=RolePurpose.READONLY_CONSOLE,
                environment=env,
                trust_template="readonly-trust",
                permission_template=None,
                description=f"Read-only console access for {env} environment",
                managed_policies=(READONLY_MANAGED_POLICY,),
            )
        )
    return specs


def template_context(config: BootstrapConfig, spec: RoleSpec) -> TemplateContext:
    # the central role serves every environment, so it is always repository-scoped
    environment = None if spec.purpose == RolePurpose.CENTRAL_BOOTSTRAP else spec.environment
    return TemplateContext(
        account_id=spec.account_id,
        repository=config.repository,
        external_id=config.external_id,
        project_name=config.project_name,
        project_short_name=config.project_short_name,
        environment=spec.environment,
        region=config.region,
        management_account_id=config.management_account_id or "",
        oidc_subject=oidc_subject(config.repository, environment, config.enforce_repo_scope),
    )


def render_role(config: BootstrapConfig, spec: RoleSpec) -> RenderedRole:
    context = template_context(config, spec)
    trust = load_template(spec.trust_template).render(context)
    permissions = None
    if spec.permission_template:
        permissions = load_template(spec.permission_template).render(context)
    return RenderedRole(spec=spec, trust=trust, permissions=permissions, external_id=config.external_id)


def render_all(config: BootstrapConfig, specs: list) -> list:
    """Render every role up front so template defects surface before any API call."""
    return [render_role(config, spec) for spec in specs]


def ensure_oidc_provider(ctx: BootstrapContext, iam, account_id: str) -> EnsureResult:
    """Ensure the GitHub OIDC provider exists with the expected audience and thumbprint."""
    arn = naming.oidc_provider_arn(account_id)
    provider = _get_oidc_provider(iam, arn)

    if provider is None:
        if ctx.dry_run:
            output.dry_run(f"create OIDC provider in {account_id}")
            return EnsureResult(resource=arn, created=True)
        try:
            with_retry(
                lambda: iam.create_open_id_connect_provider(
                    Url=naming.OIDC_PROVIDER_URL,
                    ClientIDList=[naming.OIDC_AUDIENCE],
                    ThumbprintList=[naming.OIDC_THUMBPRINT],
                ),
                ctx.config.transient_backoff,
                ctx.sleep,
                f"create OIDC provider in {account_id}",
            )
        except AlreadyExistsError:
            provider = _get_oidc_provider(iam, arn)
        else:
            output.success(f"Created OIDC provider in {account_id}")
            return EnsureResult(resource=arn, created=True)

    changed = False
    if naming.OIDC_AUDIENCE not in provider.get("ClientIDList", []):
        changed = True
        if ctx.dry_run:
            output.dry_run(f"add audience {naming.OIDC_AUDIENCE} to OIDC provider in {account_id}")
        else:
            iam.add_client_id_to_open_id_connect_provider(
                OpenIDConnectProviderArn=arn, ClientID=naming.OIDC_AUDIENCE
            )
            output.success(f"Added audience {naming.OIDC_AUDIENCE} in {account_id}")
    thumbprints = provider.get("ThumbprintList", [])
    if naming.OIDC_THUMBPRINT not in thumbprints:
        changed = True
        if ctx.dry_run:
            output.dry_run(f"add thumbprint to OIDC provider in {account_id}")
        else:
            iam.update_open_id_connect_provider_thumbprint(
                OpenIDConnectProviderArn=arn, ThumbprintList=thumbprints + [naming.OIDC_THUMBPRINT]
            )
            output.success(f"Updated OIDC provider thumbprints in {account_id}")
    if not changed:
        output.success(f"OIDC provider exists in {account_id}")
    return EnsureResult(resource=arn, changed=changed)


def _get_oidc_provider(iam, arn: str) -> Optional[dict]:
    try:
        return iam.get_open_id_connect_provider(OpenIDConnectProviderArn=arn)
    except ClientError as e:
        if error_code(e) == "NoSuchEntity":
            return None
        raise translate_client_error(e) from e


def get_role(iam, role_name: str) -> Optional[dict]:
    try:
        return iam.get_role(RoleName=role_name)["Role"]
    except ClientError as e:
        if error_code(e) == "NoSuchEntity":
            return None
        raise translate_client_error(e) from e


def attached_permission_document(iam, role_name: str, policy_name: str) -> Optional[dict]:
    try:
        response = iam.get_role_policy(RoleName=role_name, PolicyName=policy_name)
    except ClientError as e:
        if error_code(e) == "NoSuchEntity":
            return None
        raise translate_client_error(e) from e
    return parse_document(response["PolicyDocument"])


def put_permission_policy(ctx: BootstrapContext, iam, rendered: RenderedRole) -> None:
    spec = rendered.spec
    with_retry(
        lambda: iam.put_role_policy(
            RoleName=spec.name,
            PolicyName=spec.policy_name,
            PolicyDocument=json.dumps(rendered.permissions),
        ),
        ctx.config.transient_backoff,
        ctx.sleep,
        f"put {spec.policy_name} on {spec.name}",
    )


def ensure_managed_policies(ctx: BootstrapContext, iam, rendered: RenderedRole) -> bool:
    spec = rendered.spec
    if not spec.managed_policies:
        return False
    attached = set()
    paginator = iam.get_paginator("list_attached_role_policies")
    for page in paginator.paginate(RoleName=spec.name):
        attached.update(p["PolicyArn"] for p in page["AttachedPolicies"])
    changed = False
    for policy_arn in spec.managed_policies:
        if policy_arn in attached:
            continue
        changed = True
        if ctx.dry_run:
            output.dry_run(f"attach {policy_arn} to {spec.name}")
            continue
        iam.attach_role_policy(RoleName=spec.name, PolicyArn=policy_arn)
        output.success(f"Attached {policy_arn} to {spec.name}")
    return changed


def _create_role(ctx: BootstrapContext, iam, rendered: RenderedRole) -> None:
    spec = rendered.spec
    with_retry(
        lambda: iam.create_role(
            RoleName=spec.name,
            AssumeRolePolicyDocument=json.dumps(rendered.trust),
            Description=spec.description,
            MaxSessionDuration=MAX_SESSION_DURATION,
            Tags=[
                {"Key": "Environment", "Value": spec.environment},
                {"Key": "ManagedBy", "Value": "foundation-bootstrap"},
                {"Key": "Project", "Value": ctx.config.project_name},
            ],
        ),
        ctx.config.transient_backoff,
        ctx.sleep,
        f"create role {spec.name}",
    )


def ensure_role(ctx: BootstrapContext, iam, rendered: RenderedRole) -> EnsureResult:
    """Create the role, or converge an existing one to the rendered documents.

    The permission policy is rewritten only when its content hash differs
    and the trust policy only when it has drifted.
    """
    spec = rendered.spec
    role = get_role(iam, spec.name)

    if role is None:
        if ctx.dry_run:
            output.dry_run(f"create role {spec.label}")
            return EnsureResult(resource=spec.arn, created=True)
        try:
            _create_role(ctx, iam, rendered)
        except AlreadyExistsError:
            output.debug(f"{spec.name} appeared concurrently, switching to update")
            role = get_role(iam, spec.name)
        else:
            if rendered.permissions is not None:
                put_permission_policy(ctx, iam, rendered)
            ensure_managed_policies(ctx, iam, rendered)
            output.success(f"Created role {spec.label}")
            return EnsureResult(resource=spec.arn, created=True)

    changed = False
    current_trust = parse_document(role.get("AssumeRolePolicyDocument"))
    if document_hash(current_trust) != rendered.trust_hash:
        changed = True
        output.warn(f"Trust policy drift on {spec.label}")
        if ctx.dry_run:
            output.dry_run(f"re-apply trust policy on {spec.name}")
        else:
            with_retry(
                lambda: iam.update_assume_role_policy(
                    RoleName=spec.name, PolicyDocument=json.dumps(rendered.trust)
                ),
                ctx.config.transient_backoff,
                ctx.sleep,
                f"update trust on {spec.name}",
            )
            output.success(f"Re-applied trust policy on {spec.name}")

    if rendered.permissions is not None:
        current = attached_permission_document(iam, spec.name, spec.policy_name)
        if current is None or document_hash(current) != rendered.permission_hash:
            changed = True
            if ctx.dry_run:
                output.dry_run(f"update {spec.policy_name} on {spec.name}")
            else:
                put_permission_policy(ctx, iam, rendered)
                output.success(f"Updated {spec.policy_name} on {spec.name}")

    if ensure_managed_policies(ctx, iam, rendered):
        changed = True

    if not changed:
        output.success(f"Role up to date: {spec.label}")
    return EnsureResult(resource=role.get("Arn", spec.arn), changed=changed)


def _account_group(ctx: BootstrapContext, label: str, account_id: str, roles: list):
    def run():
        results = []

        def oidc():
            iam = ctx.clients.account(account_id, "iam")
            return {"arn": ensure_oidc_provider(ctx, iam, account_id).resource}

        results.append(run_target(f"{label}/oidc-provider", oidc))
        for rendered in roles:

            def role(rendered=rendered):
                iam = ctx.clients.account(account_id, "iam")
                ensured = ensure_role(ctx, iam, rendered)
                return {"arn": ensured.resource, "action": ensured.action}

            results.append(run_target(f"{label}/{rendered.spec.name}", role))
        return results

    return run


def provision_identity(ctx: BootstrapContext, accounts: dict) -> PhaseResult:
    """Ensure OIDC providers and roles in the management and workload accounts."""
    rendered = render_all(ctx.config, role_specs(ctx.config, accounts))

    targets = []
    if ctx.management_account_id:
        targets.append((naming.MANAGEMENT, ctx.management_account_id))
    targets.extend((env, accounts[env]) for env in ctx.config.environments if accounts.get(env))

    groups = []
    for label, account_id in targets:
        account_roles = [
            r for r in rendered if r.spec.account_id == account_id and r.spec.environment == label
        ]
        groups.append(_account_group(ctx, label, account_id, account_roles))
    return fan_out_groups("identity", groups, ctx.config.max_workers)


def delete_role(ctx: BootstrapContext, iam, role_name: str) -> bool:
    """Detach managed policies, delete inline policies, then delete the role."""
    if get_role(iam, role_name) is None:
        output.info(f"Role not found: {role_name}")
        return False
    if ctx.dry_run:
        output.dry_run(f"delete role {role_name}")
        return True

    for page in iam.get_paginator("list_attached_role_policies").paginate(RoleName=role_name):
        for policy in page["AttachedPolicies"]:
            iam.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])
            output.debug(f"Detached {policy['PolicyArn']} from {role_name}")
    for page in iam.get_paginator("list_role_policies").paginate(RoleName=role_name):
        for policy_name in page["PolicyNames"]:
            iam.delete_role_policy(RoleName=role_name, PolicyName=policy_name)
            output.debug(f"Deleted inline policy {policy_name} from {role_name}")
    iam.delete_role(RoleName=role_name)
    output.success(f"Deleted role {role_name}")
    return True


def delete_oidc_provider(ctx: BootstrapContext, iam, account_id: str) -> bool:
    arn = naming.oidc_provider_arn(account_id)
    if _get_oidc_provider(iam, arn) is None:
        output.info(f"OIDC provider not found in {account_id}")
        return False
    if ctx.dry_run:
        output.dry_run(f"delete OIDC provider in {account_id}")
        return True
    iam.delete_open_id_connect_provider(OpenIDConnectProviderArn=arn)
    output.success(f"Deleted OIDC provider in {account_id}")
    return True
