"""
Deterministic resource names.

Bootstrap, verification, destroy and the policy updater all derive every
identifier from here, so re-running against the same accounts always
resolves to the same resources.
"""

OIDC_PROVIDER_HOST = "token.actions.githubusercontent.com"
OIDC_PROVIDER_URL = f"https://{OIDC_PROVIDER_HOST}"
OIDC_AUDIENCE = "sts.amazonaws.com"
OIDC_THUMBPRINT = "6938fd4d98bab03faadb97b34396831e3780aea1"

ORG_ACCESS_ROLE = "OrganizationAccountAccessRole"
PERMISSION_POLICY_NAME = "DeploymentPolicy"
MANAGEMENT = "management"


def title_case(value: str) -> str:
    """static-site -> Static-Site"""
    return "-".join(part[:1].upper() + part[1:] for part in value.split("-"))


def state_bucket(project_name: str, environment: str, account_id: str) -> str:
    return f"{project_name}-state-{environment}-{account_id}"


def lock_table(project_name: str, environment: str) -> str:
    return f"{project_name}-locks-{environment}"


def kms_alias(project_name: str, environment: str, account_id: str) -> str:
    return f"alias/{state_bucket(project_name, environment, account_id)}"


def central_bucket(project_name: str, management_account_id: str) -> str:
    return f"{project_name}-terraform-state-{management_account_id}"


def state_key(environment: str) -> str:
    return f"environments/{environment}/terraform.tfstate"


def deployment_role(short_name: str, environment: str) -> str:
    return f"GitHubActions-{title_case(short_name)}-{title_case(environment)}-Role"


def readonly_role(short_name: str, environment: str) -> str:
    return f"{title_case(short_name)}-{environment}"


def central_role(short_name: str) -> str:
    return f"GitHubActions-{title_case(short_name)}-Central-Role"


def role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def oidc_provider_arn(account_id: str) -> str:
    return f"arn:aws:iam::{account_id}:oidc-provider/{OIDC_PROVIDER_HOST}"


def account_name(short_name: str, environment: str) -> str:
    return f"{short_name}-{environment}"


def account_email(short_name: str, environment: str, domain: str) -> str:
    return f"aws+{short_name}-{environment}@{domain}"


def project_ou(repository: str) -> str:
    """The project OU is named after the repository, without its owner."""
    return repository.split("/", 1)[-1]


def backend_config_filename(environment: str) -> str:
    return f"backend-config-{environment}.hcl"


def console_url(short_name: str, environment: str, account_id: str) -> str:
    return (
        "https://signin.aws.amazon.com/switchrole"
        f"?roleName={readonly_role(short_name, environment)}"
        f"&account={account_id}"
        f"&displayName={short_name}-{environment}-readonly"
    )
