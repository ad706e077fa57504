#!/usr/bin/env python3
"""
Destroy the bootstrap foundation.

Removes Terraform backends, IAM roles, OIDC providers and the central
state bucket in reverse dependency order, optionally closes the member
accounts, and removes the project OUs once they are empty.
"""

import sys

from . import cli, output
from .aws import BootstrapContext, build_context
from .destroyer import DestroyScope, confirm_destroy, destroy_foundation, select_accounts
from .errors import BootstrapError, describe
from .organization import resolve_account_map


def run(ctx: BootstrapContext, scope: DestroyScope, force: bool = False, prompt=input) -> int:
    accounts = resolve_account_map(ctx)
    if not accounts:
        output.error("accounts.json not found and no account IDs configured, nothing to destroy")
        return 1
    unknown = [env for env in scope.environments if env not in accounts]
    if unknown:
        output.error(f"No account ID for: {', '.join(unknown)}")
        return 1

    if not confirm_destroy(ctx, scope, select_accounts(ctx, scope, accounts), force=force, prompt=prompt):
        output.error("Destroy cancelled")
        return 1

    output.info(f"S3 timeout: {ctx.config.s3_timeout}s")
    phases = destroy_foundation(ctx, scope, accounts)

    output.summary("Foundation Destroy Summary", cli.phase_rows(phases))
    if scope.close_accounts and not ctx.dry_run:
        output.warn("Closed accounts can be reopened through AWS Support for 90 days")
    if all(p.succeeded for p in phases):
        output.info("Re-run bootstrap-foundation to recreate these resources")
        return 0
    return 1


def main(argv=None) -> int:
    parser = cli.base_parser("Tear down the bootstrap foundation in reverse dependency order")
    parser.add_argument("-f", "--force", action="store_true", help="Skip the confirmation prompt")
    parser.add_argument("--backends-only", action="store_true", help="Only destroy Terraform backends")
    parser.add_argument("--roles-only", action="store_true", help="Only delete IAM roles")
    parser.add_argument("--oidc-only", action="store_true", help="Only delete OIDC providers")
    parser.add_argument(
        "--central-bucket-only", action="store_true", help="Only delete the central foundation state bucket"
    )
    parser.add_argument("--accounts", help="Comma-separated environments to act on, e.g. dev,staging")
    parser.add_argument("--s3-timeout", type=int, help="Seconds allowed for emptying each bucket (default: 180)")
    parser.add_argument(
        "--close-accounts",
        action="store_true",
        help="Close member AWS accounts (PERMANENT - 90 day recovery)",
    )
    args = parser.parse_args(argv)

    output.banner("AWS Foundation Bootstrap - Destroy")
    config = cli.load(args, s3_timeout=args.s3_timeout)
    if config is None:
        return 1

    environments = [e.strip() for e in (args.accounts or "").split(",") if e.strip()]
    invalid = [e for e in environments if e not in config.environments]
    if invalid:
        output.error(f"Unknown environment(s) in --accounts: {', '.join(invalid)}")
        return 1
    scope = DestroyScope.from_flags(
        backends_only=args.backends_only,
        roles_only=args.roles_only,
        oidc_only=args.oidc_only,
        central_bucket_only=args.central_bucket_only,
        close_accounts=args.close_accounts,
        environments=environments,
    )

    try:
        ctx = build_context(config)
    except BootstrapError as e:
        output.error(f"Could not determine management account: {describe(e)}")
        return 1
    cli.print_config(ctx.config)
    return run(ctx, scope, force=args.force)


if __name__ == "__main__":
    sys.exit(main())
