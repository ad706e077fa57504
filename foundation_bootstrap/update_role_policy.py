#!/usr/bin/env python3
"""
Refresh the permission policy on existing GitHub Actions roles.

Shows a diff between the attached DeploymentPolicy and the freshly rendered
one and applies the rendered document. Trust policies are left alone unless
--validate-trust is given.
"""

import sys

from botocore.exceptions import BotoCoreError, ClientError

from . import cli, output
from .aws import BootstrapContext, build_context
from .errors import BootstrapError, ConfigurationError, describe
from .organization import resolve_account_map
from .policy_updater import ROLE_KINDS, update_policies


def run(
    ctx: BootstrapContext,
    environment: str = "all",
    role_kind: str = "deployment",
    validate_trust: bool = False,
) -> int:
    accounts = resolve_account_map(ctx)
    if environment != "all" and environment not in accounts and role_kind != "central":
        output.error(f"No account ID for {environment} (run bootstrap-organization first)")
        return 1

    try:
        phase = update_policies(ctx, accounts, environment, role_kind, validate_trust)
    except ConfigurationError as e:
        output.error("Policy templates failed validation, no changes made:")
        for problem in e.problems:
            output.error(f"  {problem}")
        return 1
    except (ClientError, BotoCoreError, BootstrapError) as e:
        output.error(describe(e))
        return 1

    if not phase.results:
        output.warn("No matching roles")
        return 1
    output.summary("Role Policy Update Summary", cli.phase_rows([phase]))
    return 0 if phase.succeeded else 1


def main(argv=None) -> int:
    parser = cli.base_parser("Diff and apply the rendered permission policy to existing roles")
    parser.add_argument(
        "-e", "--environment", default="all", help="Environment to update, or 'all' (default: all)"
    )
    parser.add_argument(
        "--role", choices=sorted(ROLE_KINDS), default="deployment", help="Which roles to update (default: deployment)"
    )
    parser.add_argument(
        "--validate-trust", action="store_true", help="Also diff the trust policy and re-apply it on drift"
    )
    args = parser.parse_args(argv)

    output.banner("AWS Foundation Bootstrap - Update Role Policy")
    config = cli.load(args)
    if config is None:
        return 1
    if args.environment != "all" and args.environment not in config.environments:
        output.error(
            f"Unknown environment {args.environment!r}, expected one of: {', '.join(config.environments)}, all"
        )
        return 1

    try:
        ctx = build_context(config)
    except BootstrapError as e:
        output.error(f"Could not determine management account: {describe(e)}")
        return 1
    cli.print_config(ctx.config)
    return run(ctx, args.environment, args.role, args.validate_trust)


if __name__ == "__main__":
    sys.exit(main())
