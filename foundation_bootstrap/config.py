"""
Run configuration.

load_config() is the only place that reads config.yaml or the process
environment. It merges, lowest precedence first:

    defaults -> config.yaml -> environment variables -> command-line overrides

and returns a frozen BootstrapConfig, or raises ConfigurationError listing
every problem found.
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

import yaml

from . import naming
from .errors import ConfigurationError
from .retry import BackoffPolicy

DEFAULT_CONFIG_PATH = Path("config.yaml")
DEFAULT_ENVIRONMENTS = ("dev", "staging", "prod")

DEFAULT_BACKOFF = {
    "account_creation": BackoffPolicy(max_attempts=60, interval=5),
    "account_active": BackoffPolicy(max_attempts=30, interval=10),
    "transient": BackoffPolicy(max_attempts=4, interval=2, multiplier=2, max_interval=20, jitter=1),
    "table_active": BackoffPolicy(max_attempts=30, interval=2),
}

REPOSITORY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*/[A-Za-z0-9_.-]+$")
BUCKET_PREFIX_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
SHORT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")
ENVIRONMENT_RE = re.compile(r"^[a-z][a-z0-9]*$")
ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
REGION_RE = re.compile(r"^[a-z]{2}(-gov|-iso[a-z]*)?-[a-z]+-\d+$")
EXTERNAL_ID_RE = re.compile(r"^[\w+=,.@:/-]{2,1224}$")
EMAIL_DOMAIN_RE = re.compile(r"^[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")

MAX_BUCKET_NAME = 63
MAX_ROLE_NAME = 64
MAX_TABLE_NAME = 255

# Environment variables understood by load_config(), mapped to config keys.
ENV_VARS = {
    "GITHUB_REPO": "github_repo",
    "PROJECT_SHORT_NAME": "project_short_name",
    "PROJECT_NAME": "project_name",
    "AWS_DEFAULT_REGION": "region",
    "MANAGEMENT_ACCOUNT_ID": "management_account_id",
    "EXTERNAL_ID": "external_id",
    "OUTPUT_DIR": "output_dir",
    "DRY_RUN": "dry_run",
    "VERBOSE": "verbose",
    "SKIP_VERIFICATION": "skip_verification",
    "S3_TIMEOUT": "s3_timeout",
}

BOOL_KEYS = {"dry_run", "verbose", "skip_verification", "enforce_repo_scope"}


@dataclass(frozen=True)
class BootstrapConfig:
    project_short_name: str
    project_name: str
    repository: str
    region: str = "us-east-1"
    management_account_id: Optional[str] = None
    external_id: str = ""
    environments: tuple = DEFAULT_ENVIRONMENTS
    account_ids: Mapping[str, str] = field(default_factory=dict)
    account_email_domain: str = "example.com"
    workloads_ou_name: str = "Workloads"
    output_dir: Path = Path("output")
    enforce_repo_scope: bool = True
    dry_run: bool = False
    verbose: bool = False
    skip_verification: bool = False
    s3_timeout: int = 180
    max_workers: int = 4
    key_deletion_days: int = 7
    account_creation_backoff: BackoffPolicy = DEFAULT_BACKOFF["account_creation"]
    account_active_backoff: BackoffPolicy = DEFAULT_BACKOFF["account_active"]
    transient_backoff: BackoffPolicy = DEFAULT_BACKOFF["transient"]
    table_active_backoff: BackoffPolicy = DEFAULT_BACKOFF["table_active"]

    @property
    def adoption_mode(self) -> bool:
        """True when every environment already has a known account ID."""
        return all(self.account_ids.get(env) for env in self.environments)

    @property
    def project_ou_name(self) -> str:
        return naming.project_ou(self.repository)

    def with_management_account(self, account_id: str) -> "BootstrapConfig":
        return replace(self, management_account_id=account_id)

    def with_environments(self, environments) -> "BootstrapConfig":
        return replace(self, environments=tuple(environments))


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError([f"{path}: top level must be a mapping"])
    return data


def _read_environ(environ: Mapping[str, str], environments) -> dict:
    values = {}
    for var, key in ENV_VARS.items():
        if environ.get(var):
            values[key] = environ[var]
    account_ids = {}
    for env in environments:
        var = f"AWS_ACCOUNT_ID_{env.upper()}"
        if environ.get(var):
            account_ids[env] = environ[var]
    if account_ids:
        values["account_ids"] = account_ids
    return values


def _merge(*layers: dict) -> dict:
    merged = {}
    for layer in layers:
        for key, value in layer.items():
            if value is None:
                continue
            if key in ("account_ids", "backoff") and isinstance(value, dict):
                merged[key] = {**merged.get(key, {}), **value}
            else:
                merged[key] = value
    return merged


def _backoff(raw: dict, name: str, problems: list) -> BackoffPolicy:
    data = (raw or {}).get(name)
    if data is None:
        return DEFAULT_BACKOFF[name]
    try:
        policy = BackoffPolicy.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        problems.append(f"backoff.{name}: expected max_attempts and interval ({e})")
        return DEFAULT_BACKOFF[name]
    if policy.max_attempts < 1 or policy.interval < 0 or policy.multiplier < 1:
        problems.append(
            f"backoff.{name}: max_attempts must be >= 1, interval >= 0 and multiplier >= 1"
        )
    return policy


def _positive_int(raw: dict, key: str, default: int, problems: list) -> int:
    value = raw.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError):
        problems.append(f"{key}: expected an integer, got {value!r}")
        return default
    if number < 1:
        problems.append(f"{key}: must be at least 1, got {number}")
    return number


def validate(raw: dict) -> BootstrapConfig:
    """Build a BootstrapConfig from merged raw values, collecting every problem."""
    problems = []

    short_name = str(raw.get("project_short_name") or "").strip()
    project_name = str(raw.get("project_name") or "").strip()
    repository = str(raw.get("github_repo") or "").strip()

    if not short_name:
        problems.append("project_short_name is required (PROJECT_SHORT_NAME)")
    elif not SHORT_NAME_RE.match(short_name):
        problems.append(
            f"project_short_name {short_name!r} must be lowercase letters, digits and hyphens"
        )

    if not project_name:
        problems.append("project_name is required (PROJECT_NAME)")
    elif not BUCKET_PREFIX_RE.match(project_name) or "--" in project_name:
        problems.append(
            f"project_name {project_name!r} is not a valid bucket name prefix "
            "(lowercase letters, digits and single hyphens, no leading or trailing hyphen)"
        )

    if not repository:
        problems.append("github_repo is required (GITHUB_REPO), e.g. owner/name")
    elif not REPOSITORY_RE.match(repository):
        problems.append(f"github_repo {repository!r} must be in owner/name form")

    region = str(raw.get("region") or "us-east-1")
    if not REGION_RE.match(region):
        problems.append(f"region {region!r} is not a valid AWS region name")

    environments = raw.get("environments") or list(DEFAULT_ENVIRONMENTS)
    if isinstance(environments, str):
        environments = [e.strip() for e in environments.split(",") if e.strip()]
    environments = tuple(str(e) for e in environments)
    if not environments:
        problems.append("environments must list at least one environment")
    if len(set(environments)) != len(environments):
        problems.append(f"environments contains duplicates: {list(environments)}")
    for env in environments:
        if env == naming.MANAGEMENT:
            problems.append("environment name 'management' is reserved")
        elif not ENVIRONMENT_RE.match(env):
            problems.append(f"environment {env!r} must be lowercase letters and digits")

    management_id = raw.get("management_account_id")
    management_id = str(management_id).strip() if management_id else None
    if management_id and not ACCOUNT_ID_RE.match(management_id):
        problems.append(f"management_account_id {management_id!r} must be 12 digits")

    account_ids = {}
    for env, account_id in (raw.get("account_ids") or {}).items():
        account_id = str(account_id).strip()
        if env not in environments:
            problems.append(f"account_ids.{env}: not a configured environment")
        elif not ACCOUNT_ID_RE.match(account_id):
            problems.append(f"account_ids.{env} {account_id!r} must be 12 digits")
        else:
            account_ids[env] = account_id

    external_id = str(raw.get("external_id") or f"github-actions-{short_name}")
    if not EXTERNAL_ID_RE.match(external_id):
        problems.append(
            f"external_id {external_id!r} must be 2-1224 characters of [\\w+=,.@:/-]"
        )

    email_domain = str(raw.get("account_email_domain") or "example.com")
    if not EMAIL_DOMAIN_RE.match(email_domain):
        problems.append(f"account_email_domain {email_domain!r} is not a domain name")

    # Length limits are checked against the longest names the run will derive.
    names_valid = (
        SHORT_NAME_RE.match(short_name)
        and BUCKET_PREFIX_RE.match(project_name)
        and environments
        and all(ENVIRONMENT_RE.match(env) for env in environments)
    )
    if names_valid:
        sample_id = management_id if management_id and ACCOUNT_ID_RE.match(management_id) else "0" * 12
        for env in environments:
            bucket = naming.state_bucket(project_name, env, sample_id)
            if len(bucket) > MAX_BUCKET_NAME:
                problems.append(
                    f"project_name {project_name!r} is too long: state bucket {bucket!r} "
                    f"exceeds {MAX_BUCKET_NAME} characters"
                )
            role = naming.deployment_role(short_name, env)
            if len(role) > MAX_ROLE_NAME:
                problems.append(
                    f"project_short_name {short_name!r} is too long: role {role!r} "
                    f"exceeds {MAX_ROLE_NAME} characters"
                )
        central = naming.central_bucket(project_name, sample_id)
        if len(central) > MAX_BUCKET_NAME:
            problems.append(
                f"project_name {project_name!r} is too long: central bucket {central!r} "
                f"exceeds {MAX_BUCKET_NAME} characters"
            )

    s3_timeout = _positive_int(raw, "s3_timeout", 180, problems)
    max_workers = _positive_int(raw, "max_workers", 4, problems)
    key_deletion_days = _positive_int(raw, "key_deletion_days", 7, problems)
    if not 7 <= key_deletion_days <= 30:
        problems.append(f"key_deletion_days must be between 7 and 30, got {key_deletion_days}")

    backoff = raw.get("backoff") or {}
    policies = {name: _backoff(backoff, name, problems) for name in DEFAULT_BACKOFF}

    if problems:
        raise ConfigurationError(problems)

    return BootstrapConfig(
        project_short_name=short_name,
        project_name=project_name,
        repository=repository,
        region=region,
        management_account_id=management_id,
        external_id=external_id,
        environments=environments,
        account_ids=account_ids,
        account_email_domain=email_domain,
        workloads_ou_name=str(raw.get("workloads_ou_name") or "Workloads"),
        output_dir=Path(raw.get("output_dir") or "output"),
        enforce_repo_scope=_parse_bool(raw.get("enforce_repo_scope", True)),
        dry_run=_parse_bool(raw.get("dry_run", False)),
        verbose=_parse_bool(raw.get("verbose", False)),
        skip_verification=_parse_bool(raw.get("skip_verification", False)),
        s3_timeout=s3_timeout,
        max_workers=max_workers,
        key_deletion_days=key_deletion_days,
        account_creation_backoff=policies["account_creation"],
        account_active_backoff=policies["account_active"],
        transient_backoff=policies["transient"],
        table_active_backoff=policies["table_active"],
    )


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[dict] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BootstrapConfig:
    """Load and validate configuration from file, environment and overrides."""
    environ = os.environ if environ is None else environ
    if path is None:
        path = Path(environ.get("BOOTSTRAP_CONFIG") or DEFAULT_CONFIG_PATH)

    file_values = _read_yaml(Path(path))
    environments = (overrides or {}).get("environments") or file_values.get(
        "environments"
    ) or DEFAULT_ENVIRONMENTS
    if isinstance(environments, str):
        environments = environments.split(",")
    env_values = _read_environ(environ, environments)

    raw = _merge(file_values, env_values, overrides or {})
    for key in BOOL_KEYS:
        if key in raw:
            raw[key] = _parse_bool(raw[key])
    return validate(raw)
