#!/usr/bin/env python3
"""
Bootstrap the AWS Organization for a project.

Steps:
- Ensure the organization exists with all features enabled
- Ensure the Workloads OU and the project OU beneath it
- Create (or adopt) one member account per environment
- Move each account into the project OU and wait until it is ACTIVE
- Write accounts.json for bootstrap-foundation and CI
"""

import sys

from botocore.exceptions import BotoCoreError, ClientError

from . import cli, output
from .aws import BootstrapContext, build_context
from .errors import BootstrapError, describe
from .models import PhaseResult, TargetResult
from .organization import (
    account_map_from,
    ensure_accounts,
    ensure_organization,
    ensure_ou_hierarchy,
    save_account_map,
)

TOTAL_STEPS = 4


def run(ctx: BootstrapContext) -> int:
    phases = []

    output.step(1, TOTAL_STEPS, "Ensuring AWS Organization")
    org_phase = PhaseResult(name="organization")
    try:
        org = ensure_organization(ctx)
        org_phase.add(TargetResult(target="organization", succeeded=True, details={"id": org.resource}))
    except (ClientError, BotoCoreError, BootstrapError) as e:
        output.error(f"Organization: {describe(e)}")
        org_phase.add(TargetResult(target="organization", succeeded=False, error=describe(e)))
        phases.append(org_phase)
        output.summary("Organization Bootstrap Summary", cli.phase_rows(phases))
        return 1
    phases.append(org_phase)

    output.step(2, TOTAL_STEPS, "Ensuring organizational units")
    ou_phase = PhaseResult(name="organizational-units")
    try:
        hierarchy = ensure_ou_hierarchy(ctx)
        ou_phase.add(TargetResult(target=ctx.config.project_ou_name, succeeded=True, details=hierarchy))
    except (ClientError, BotoCoreError, BootstrapError) as e:
        output.error(f"Organizational units: {describe(e)}")
        ou_phase.add(TargetResult(target=ctx.config.project_ou_name, succeeded=False, error=describe(e)))
        hierarchy = {"project": None}
    phases.append(ou_phase)

    output.step(3, TOTAL_STEPS, "Ensuring member accounts")
    if ctx.config.adoption_mode:
        output.info("All account IDs supplied, adopting existing accounts")
    accounts_phase = ensure_accounts(ctx, hierarchy.get("project"))
    phases.append(accounts_phase)
    accounts = account_map_from(accounts_phase)

    output.step(4, TOTAL_STEPS, "Saving account map")
    if ctx.dry_run:
        output.dry_run(f"write accounts.json with {len(accounts)} accounts")
    else:
        path = save_account_map(ctx.config.output_dir, ctx.management_account_id, accounts)
        output.success(f"Wrote {path}")
    for env, account_id in accounts.items():
        output.info(f"{env}: {account_id}")

    output.summary("Organization Bootstrap Summary", cli.phase_rows(phases))
    return 0 if all(p.succeeded for p in phases) else 1


def main(argv=None) -> int:
    parser = cli.base_parser("Create or adopt the AWS Organization, OUs and member accounts")
    args = parser.parse_args(argv)

    output.banner("AWS Foundation Bootstrap - Organization")
    config = cli.load(args)
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
