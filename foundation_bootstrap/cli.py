"""Argument handling shared by the four commands."""

import argparse
from typing import Optional

from . import output
from .config import BootstrapConfig, load_config
from .errors import ConfigurationError


def base_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--config", help="Path to config.yaml (default: ./config.yaml or $BOOTSTRAP_CONFIG)")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change without changing it")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debug output")
    parser.add_argument("--output-dir", help="Directory for accounts.json, backend configs and reports")
    parser.add_argument("--region", help="AWS region (default: us-east-1)")
    return parser


def overrides_from(args: argparse.Namespace, **extra) -> dict:
    overrides = {
        "region": args.region,
        "output_dir": args.output_dir,
        "dry_run": True if args.dry_run else None,
        "verbose": True if args.verbose else None,
    }
    overrides.update(extra)
    return {k: v for k, v in overrides.items() if v is not None}


def load(args: argparse.Namespace, **extra) -> Optional[BootstrapConfig]:
    """Load configuration, printing every problem and returning None on failure."""
    try:
        config = load_config(path=args.config, overrides=overrides_from(args, **extra))
    except ConfigurationError as e:
        output.error("Invalid configuration:")
        for problem in e.problems:
            output.error(f"  {problem}")
        return None
    output.set_verbose(config.verbose)
    return config


def print_config(config: BootstrapConfig) -> None:
    output.info(f"Repository:         {config.repository}")
    output.info(f"Project:            {config.project_name} ({config.project_short_name})")
    output.info(f"Region:             {config.region}")
    output.info(f"Management account: {config.management_account_id}")
    output.info(f"Environments:       {', '.join(config.environments)}")
    if config.dry_run:
        output.warn("DRY RUN - no changes will be made")


def phase_rows(phases: list) -> list:
    rows = []
    for phase in phases:
        for result in phase.results:
            label = f"{phase.name}: {result.target}"
            if result.error:
                label = f"{label} ({result.error})"
            rows.append((label, result.succeeded))
    return rows
