"""
Error taxonomy for bootstrap and destroy runs.

Provider failures arrive as botocore ClientError; translate_client_error()
maps them by error code onto the classes below so callers can decide
between retrying, switching to the update path, or failing one target.
Connection-level failures (BotoCoreError) go through
translate_botocore_error().
"""

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    PartialCredentialsError,
)


class BootstrapError(Exception):
    """Base class for every failure the orchestrator knows how to report."""

    retryable = False

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


class ConfigurationError(BootstrapError):
    """One or more configuration fields are missing or malformed."""

    def __init__(self, problems: list):
        self.problems = list(problems)
        lines = "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(f"Invalid configuration:\n{lines}", code="InvalidConfiguration")


class TemplateError(ConfigurationError):
    """A policy template could not be rendered into a safe document."""


class TransientProviderError(BootstrapError):
    retryable = True


class AlreadyExistsError(BootstrapError):
    pass


class NotFoundError(BootstrapError):
    pass


class PropagationPending(BootstrapError):
    """A bounded wait ran out of attempts before the resource settled."""


class PermissionDenied(BootstrapError):
    pass


class NamingCollision(BootstrapError):
    def __init__(self, message: str, hint: str, code: str = ""):
        super().__init__(message, code=code)
        self.hint = hint

    def __str__(self):
        return f"{self.args[0]} ({self.hint})"


class VerificationFailure(BootstrapError):
    pass


class ProviderError(BootstrapError):
    pass


TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "SlowDown",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "ConcurrentModification",
    "ConcurrentModificationException",
    "OperationAbortedException",
    "OperationAborted",
    "ResourceInUseException",
    "KMSInternalException",
    "DependencyTimeoutException",
}

ALREADY_EXISTS_CODES = {
    "EntityAlreadyExists",
    "EntityAlreadyExistsException",
    "BucketAlreadyOwnedByYou",
    "AlreadyExistsException",
    "DuplicateOrganizationalUnitException",
    "AlreadyInOrganizationException",
    "DuplicateAccountException",
    "TableAlreadyExistsException",
}

NOT_FOUND_CODES = {
    "NoSuchEntity",
    "NoSuchEntityException",
    "NoSuchBucket",
    "NotFound",
    "404",
    "NotFoundException",
    "ResourceNotFoundException",
    "AccountNotFoundException",
    "OrganizationalUnitNotFoundException",
    "AWSOrganizationsNotInUseException",
}

PERMISSION_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "AuthorizationError",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
    "SignatureDoesNotMatch",
    "AccountNotRegisteredException",
}

COLLISION_CODES = {"BucketAlreadyExists"}

NAMING_COLLISION_HINT = "choose a different project_name"


def error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def error_message(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Message", str(e))


def translate_client_error(e: ClientError) -> BootstrapError:
    """Classify a ClientError into the orchestrator's taxonomy."""
    code = error_code(e)
    message = error_message(e)

    if code in TRANSIENT_CODES:
        return TransientProviderError(message, code=code)
    # IAM rejects trust policies naming a just-created principal until it propagates
    if code == "MalformedPolicyDocument" and "invalid principal" in message.lower():
        return TransientProviderError(message, code=code)
    if code in ALREADY_EXISTS_CODES:
        return AlreadyExistsError(message, code=code)
    if code in NOT_FOUND_CODES:
        return NotFoundError(message, code=code)
    if code in PERMISSION_CODES:
        return PermissionDenied(message, code=code)
    if code in COLLISION_CODES:
        return NamingCollision(message, NAMING_COLLISION_HINT, code=code)
    return ProviderError(message, code=code)


def translate_botocore_error(e: BotoCoreError) -> BootstrapError:
    """Classify a failure that never produced a service response."""
    code = type(e).__name__
    if isinstance(e, (BotoConnectionError, HTTPClientError)):
        return TransientProviderError(str(e), code=code)
    if isinstance(e, (NoCredentialsError, PartialCredentialsError)):
        return PermissionDenied(str(e), code=code)
    return ProviderError(str(e), code=code)


def translate(e: Exception) -> BootstrapError:
    if isinstance(e, ClientError):
        return translate_client_error(e)
    if isinstance(e, BotoCoreError):
        return translate_botocore_error(e)
    return e


def describe(exc: BaseException) -> str:
    """One-line description used in target results and reports."""
    if isinstance(exc, ClientError):
        return f"{error_code(exc)}: {error_message(exc)}"
    if isinstance(exc, BootstrapError) and exc.code and not isinstance(exc, ConfigurationError):
        return f"{exc.code}: {exc}"
    return str(exc)
