#!/usr/bin/env python3
"""
Bootstrap the identity and state foundation in every environment account.

Steps:
- Confirm each environment's account is ACTIVE
- Ensure OIDC providers, deployment, read-only and central roles
- Ensure KMS keys, state buckets, lock tables and the central bucket
- Verify providers, role assumption and backend read/write
- Write backend configs, bootstrap report and console links
"""

import sys

from botocore.exceptions import BotoCoreError, ClientError

from . import cli, output
from .aws import BootstrapContext, build_context
from .backends import backend_spec, provision_backends
from .errors import BootstrapError, ConfigurationError, describe
from .identity import provision_identity
from .models import AccountStatus, PhaseResult, TargetResult
from .organization import account_status, resolve_account_map, save_account_map
from .report import (
    BootstrapReport,
    console_urls,
    utc_timestamp,
    write_bootstrap_report,
    write_console_urls,
    write_verification_report,
)
from .verification import verify_foundation

TOTAL_STEPS = 5


def check_accounts_active(ctx: BootstrapContext, accounts: dict) -> tuple:
    """Return (active accounts, phase result). Inactive accounts are left out."""
    phase = PhaseResult(name="accounts")
    active = {}
    for env in ctx.config.environments:
        account_id = accounts.get(env)
        if not account_id:
            output.error(f"{env}: no account ID (run bootstrap-organization or set AWS_ACCOUNT_ID_{env.upper()})")
            phase.add(TargetResult(target=env, succeeded=False, error="no account ID"))
            continue
        try:
            status = account_status(ctx, account_id)
        except (ClientError, BotoCoreError, BootstrapError) as e:
            output.error(f"{env} ({account_id}): {describe(e)}")
            phase.add(TargetResult(target=env, succeeded=False, error=describe(e)))
            continue
        if status != AccountStatus.ACTIVE:
            output.error(f"{env} ({account_id}) is {status.value}")
            phase.add(TargetResult(target=env, succeeded=False, error=f"account is {status.value}"))
            continue
        output.success(f"{env}: {account_id} is ACTIVE")
        active[env] = account_id
        phase.add(TargetResult(target=env, succeeded=True, details={"account_id": account_id}))
    return active, phase


def role_arns_from(phase: PhaseResult) -> dict:
    return {
        r.target: r.details["arn"]
        for r in phase.results
        if r.succeeded and r.details.get("arn") and not r.target.endswith("/oidc-provider")
    }


def run(ctx: BootstrapContext) -> int:
    config = ctx.config
    started = ctx.clock()
    report = BootstrapReport(timestamp=utc_timestamp(), management_account_id=ctx.management_account_id)

    output.step(1, TOTAL_STEPS, "Checking member accounts")
    accounts = resolve_account_map(ctx)
    active, accounts_phase = check_accounts_active(ctx, accounts)
    report.phases.append(accounts_phase)
    report.accounts = accounts

    output.step(2, TOTAL_STEPS, "Provisioning OIDC providers and IAM roles")
    try:
        identity_phase = provision_identity(ctx, active)
    except ConfigurationError as e:
        output.error("Policy templates failed validation, no changes made:")
        for problem in e.problems:
            output.error(f"  {problem}")
        return 1
    report.phases.append(identity_phase)
    report.role_arns = role_arns_from(identity_phase)

    output.step(3, TOTAL_STEPS, "Provisioning Terraform state backends")
    backends_phase = provision_backends(ctx, active)
    report.phases.append(backends_phase)
    report.backends = {env: backend_spec(ctx, env, account_id).to_dict() for env, account_id in active.items()}

    output.step(4, TOTAL_STEPS, "Verifying foundation")
    if config.dry_run:
        output.info("Skipped in dry-run mode")
    elif config.skip_verification:
        output.warn("Verification skipped (--skip-verification)")
    else:
        report.verification = verify_foundation(ctx, accounts)

    output.step(5, TOTAL_STEPS, "Writing artifacts")
    report.console_urls = console_urls(config, accounts)
    report.duration_seconds = ctx.clock() - started
    if config.dry_run:
        output.dry_run(f"write accounts.json, bootstrap report and console links to {config.output_dir}")
    else:
        output.success(f"Wrote {save_account_map(config.output_dir, ctx.management_account_id, accounts)}")
        output.success(f"Wrote {write_console_urls(config.output_dir, config, accounts)}")
        if report.verification is not None:
            output.success(f"Wrote {write_verification_report(config.output_dir, report.verification)}")
        output.success(f"Wrote {write_bootstrap_report(config.output_dir, report)}")

    rows = cli.phase_rows(report.phases)
    if report.verification is not None:
        rows.extend(report.verification.rows())
    output.summary("Foundation Bootstrap Summary", rows)
    for env, url in report.console_urls.items():
        output.info(f"{env} console: {url}")
    output.info(f"Status: {report.status} in {report.duration_seconds:.0f}s")
    return 0 if report.succeeded else 1


def main(argv=None) -> int:
    parser = cli.base_parser("Provision OIDC trust, IAM roles and Terraform state backends")
    parser.add_argument("--skip-verification", action="store_true", help="Do not run the verification checks")
    args = parser.parse_args(argv)

    output.banner("AWS Foundation Bootstrap - Foundation")
    config = cli.load(args, skip_verification=True if args.skip_verification else None)
    if config is None:
        return 1

    try:
        ctx = build_context(config)
    except BootstrapError as e:
        output.error(f"Could not determine management account: {describe(e)}")
        return 1
    cli.print_config(ctx.config)
    return run(ctx)


if __name__ == "__main__":
    sys.exit(main())
