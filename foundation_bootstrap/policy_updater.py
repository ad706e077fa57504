"""
Policy Updater.

Re-renders a role's permission policy, shows a unified diff against the
document attached in IAM and applies it when they differ. Trust policies
are only compared and re-applied when explicitly requested.
"""

import difflib
import json
from pathlib import Path

from . import naming, output
from .aws import BootstrapContext
from .errors import NotFoundError
from .identity import (
    RenderedRole,
    attached_permission_document,
    get_role,
    put_permission_policy,
    render_all,
    role_specs,
)
from .models import PhaseResult, RolePurpose, fan_out
from .retry import with_retry
from .templates import document_hash, parse_document, pretty_json

ROLE_KINDS = {
    "deployment": (RolePurpose.DEPLOYMENT,),
    "central": (RolePurpose.CENTRAL_BOOTSTRAP,),
    "all": (RolePurpose.DEPLOYMENT, RolePurpose.CENTRAL_BOOTSTRAP),
}
POLICY_CAPTURE_DIR = "policies"


def diff_documents(current: dict, rendered: dict, label: str) -> str:
    before = pretty_json(current).splitlines(keepends=True) if current else []
    after = pretty_json(rendered).splitlines(keepends=True)
    return "".join(
        difflib.unified_diff(before, after, fromfile=f"{label} (attached)", tofile=f"{label} (rendered)")
    )


def print_diff(diff: str) -> None:
    for line in diff.splitlines():
        output.info(line)


def capture_policy(output_dir: Path, role_name: str, document: dict) -> Path:
    """Keep a copy of the applied document under output/policies/."""
    directory = Path(output_dir) / POLICY_CAPTURE_DIR
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{role_name}.json"
    path.write_text(json.dumps(document, indent=2) + "\n")
    return path


def select_roles(ctx: BootstrapContext, accounts: dict, environment: str, role_kind: str) -> list:
    """Rendered roles matching the selectors.

    The central role belongs to no environment; it is selected by
    environment 'all' or role kind 'central'.
    """
    purposes = ROLE_KINDS[role_kind]
    specs = [
        spec
        for spec in role_specs(ctx.config, accounts)
        if spec.purpose in purposes
        and (
            environment == "all"
            or spec.environment == environment
            or (role_kind == "central" and spec.environment == naming.MANAGEMENT)
        )
    ]
    return render_all(ctx.config, specs)


def update_role_policy(ctx: BootstrapContext, rendered: RenderedRole, validate_trust: bool = False) -> dict:
    """Diff and apply one role's permission policy (and trust, if asked)."""
    spec = rendered.spec
    iam = ctx.clients.account(spec.account_id, "iam")
    role = get_role(iam, spec.name)
    if role is None:
        raise NotFoundError(
            f"Role {spec.label} does not exist, run bootstrap-foundation first", code="NoSuchEntity"
        )

    result = {"role": spec.name, "account_id": spec.account_id, "changed": False, "trust_changed": False}

    current = attached_permission_document(iam, spec.name, spec.policy_name) or {}
    if not current or document_hash(current) != rendered.permission_hash:
        result["changed"] = True
        output.info(f"Permission policy changes for {spec.label}:")
        print_diff(diff_documents(current, rendered.permissions, spec.policy_name))
        if ctx.dry_run:
            output.dry_run(f"put {spec.policy_name} on {spec.name}")
        else:
            put_permission_policy(ctx, iam, rendered)
            output.success(f"Applied {spec.policy_name} to {spec.label}")
            result["captured"] = str(capture_policy(ctx.config.output_dir, spec.name, rendered.permissions))
    else:
        output.success(f"{spec.policy_name} on {spec.label} is up to date")

    if validate_trust:
        current_trust = parse_document(role.get("AssumeRolePolicyDocument"))
        if document_hash(current_trust) != rendered.trust_hash:
            result["trust_changed"] = True
            output.warn(f"Trust policy drift on {spec.label}:")
            print_diff(diff_documents(current_trust, rendered.trust, "trust policy"))
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
                output.success(f"Re-applied trust policy on {spec.label}")
        else:
            output.success(f"Trust policy on {spec.label} matches")
    return result


def update_policies(
    ctx: BootstrapContext,
    accounts: dict,
    environment: str = "all",
    role_kind: str = "deployment",
    validate_trust: bool = False,
) -> PhaseResult:
    roles = select_roles(ctx, accounts, environment, role_kind)
    targets = [
        (rendered.spec.label, lambda rendered=rendered: update_role_policy(ctx, rendered, validate_trust))
        for rendered in roles
    ]
    return fan_out("update-role-policy", targets, ctx.config.max_workers)
