"""
State Backend Provisioner.

Per environment: a KMS key, a versioned and KMS-encrypted S3 state bucket
with public access blocked, and a DynamoDB lock table, created in that
order. The management account additionally holds the central foundation
state bucket. Teardown helpers used by the destroyer live here as well so
both paths share one set of names.
"""

from pathlib import Path

from botocore.exceptions import ClientError

from . import naming, output
from .aws import BootstrapContext
from .errors import (
    AlreadyExistsError,
    NAMING_COLLISION_HINT,
    NamingCollision,
    PropagationPending,
    ProviderError,
    describe,
    error_code,
    translate_client_error,
)
from .models import BackendSpec, EnsureResult, PhaseResult, fan_out_groups, run_target
from .retry import poll_until, with_retry

BUCKET_MISSING_CODES = {"404", "NoSuchBucket", "NotFound"}
DELETE_BATCH_SIZE = 1000

PUBLIC_ACCESS_BLOCK = {
    "BlockPublicAcls": True,
    "IgnorePublicAcls": True,
    "BlockPublicPolicy": True,
    "RestrictPublicBuckets": True,
}


def backend_spec(ctx: BootstrapContext, environment: str, account_id: str) -> BackendSpec:
    return BackendSpec.derive(ctx.config.project_name, environment, account_id, ctx.config.region)


def _tags(ctx: BootstrapContext, environment: str) -> dict:
    return {
        "Environment": environment,
        "ManagedBy": "foundation-bootstrap",
        "Project": ctx.config.project_name,
    }


def _key_state(kms, key_id: str):
    try:
        return kms.describe_key(KeyId=key_id)["KeyMetadata"]
    except ClientError as e:
        if error_code(e) == "NotFoundException":
            return None
        raise translate_client_error(e) from e


def ensure_kms_key(ctx: BootstrapContext, kms, backend: BackendSpec) -> EnsureResult:
    """Ensure a rotating customer-managed key behind the backend's alias."""
    metadata = _key_state(kms, backend.kms_alias)

    if metadata is not None:
        changed = False
        key_id = metadata["KeyId"]
        state = metadata.get("KeyState")
        if state == "PendingDeletion":
            changed = True
            if ctx.dry_run:
                output.dry_run(f"cancel scheduled deletion of {backend.kms_alias}")
            else:
                kms.cancel_key_deletion(KeyId=key_id)
                kms.enable_key(KeyId=key_id)
                state = "Enabled"
                output.warn(f"Cancelled scheduled deletion of {backend.kms_alias}")
        elif state == "Disabled":
            changed = True
            if ctx.dry_run:
                output.dry_run(f"enable key {backend.kms_alias}")
            else:
                kms.enable_key(KeyId=key_id)
                state = "Enabled"
        if state == "Enabled" and not kms.get_key_rotation_status(KeyId=key_id).get("KeyRotationEnabled"):
            changed = True
            if ctx.dry_run:
                output.dry_run(f"enable rotation on {backend.kms_alias}")
            else:
                kms.enable_key_rotation(KeyId=key_id)
        if not changed:
            output.success(f"KMS key exists: {backend.kms_alias}")
        return EnsureResult(resource=metadata["Arn"], changed=changed)

    if ctx.dry_run:
        output.dry_run(f"create KMS key {backend.kms_alias}")
        return EnsureResult(resource=backend.kms_alias, created=True)

    key = with_retry(
        lambda: kms.create_key(
            Description=f"Terraform state encryption for {backend.bucket}",
            KeyUsage="ENCRYPT_DECRYPT",
            Tags=[{"TagKey": k, "TagValue": v} for k, v in _tags(ctx, backend.environment).items()],
        ),
        ctx.config.transient_backoff,
        ctx.sleep,
        f"create key for {backend.bucket}",
    )["KeyMetadata"]
    # later runs find the key by its alias
    try:
        kms.create_alias(AliasName=backend.kms_alias, TargetKeyId=key["KeyId"])
    except ClientError as e:
        err = translate_client_error(e)
        _retire_key(ctx, kms, key["KeyId"], backend.kms_alias)
        if not isinstance(err, AlreadyExistsError):
            raise err from e
        # another run won the alias; use its key
        metadata = _key_state(kms, backend.kms_alias)
        return EnsureResult(resource=metadata["Arn"])
    kms.enable_key_rotation(KeyId=key["KeyId"])
    output.success(f"Created KMS key {backend.kms_alias}")
    return EnsureResult(resource=key["Arn"], created=True)


def _retire_key(ctx: BootstrapContext, kms, key_id: str, alias: str) -> None:
    """Schedule deletion of a key that never got its alias."""
    try:
        kms.schedule_key_deletion(KeyId=key_id, PendingWindowInDays=ctx.config.key_deletion_days)
    except ClientError as e:
        output.error(f"Key {key_id} for {alias} has no alias and could not be scheduled for deletion: {describe(e)}")
    else:
        output.warn(f"Scheduled deletion of unaliased key {key_id} for {alias}")


def bucket_exists(s3, bucket: str) -> bool:
    """True if we own the bucket; NamingCollision if someone else does."""
    try:
        s3.head_bucket(Bucket=bucket)
        return True
    except ClientError as e:
        code = error_code(e)
        if code in BUCKET_MISSING_CODES:
            return False
        if code in ("403", "AccessDenied"):
            raise NamingCollision(
                f"Bucket {bucket} exists but is not accessible from this account",
                NAMING_COLLISION_HINT,
                code="BucketAlreadyExists",
            ) from e
        raise translate_client_error(e) from e


def bucket_region(s3, bucket: str) -> str:
    location = s3.get_bucket_location(Bucket=bucket).get("LocationConstraint")
    return location or "us-east-1"


def create_bucket(ctx: BootstrapContext, s3, bucket: str, region: str) -> bool:
    """Create the bucket. Returns False if we already owned it."""
    kwargs = {"Bucket": bucket}
    if region != "us-east-1":
        kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
    try:
        with_retry(lambda: s3.create_bucket(**kwargs), ctx.config.transient_backoff, ctx.sleep, f"create {bucket}")
    except AlreadyExistsError:
        return False
    except NamingCollision as e:
        raise NamingCollision(
            f"Bucket name {bucket} is already taken in the global S3 namespace",
            NAMING_COLLISION_HINT,
            code=e.code,
        ) from e
    return True


def _ensure_bucket_settings(ctx: BootstrapContext, s3, bucket: str, encryption_rule: dict) -> bool:
    changed = False

    if s3.get_bucket_versioning(Bucket=bucket).get("Status") != "Enabled":
        changed = True
        if ctx.dry_run:
            output.dry_run(f"enable versioning on {bucket}")
        else:
            s3.put_bucket_versioning(Bucket=bucket, VersioningConfiguration={"Status": "Enabled"})
            output.debug(f"Enabled versioning on {bucket}")

    try:
        rules = s3.get_bucket_encryption(Bucket=bucket)["ServerSideEncryptionConfiguration"]["Rules"]
    except ClientError as e:
        if error_code(e) != "ServerSideEncryptionConfigurationNotFoundError":
            raise translate_client_error(e) from e
        rules = []
    current = rules[0].get("ApplyServerSideEncryptionByDefault", {}) if rules else {}
    wanted = encryption_rule["ApplyServerSideEncryptionByDefault"]
    if current.get("SSEAlgorithm") != wanted["SSEAlgorithm"] or (
        "KMSMasterKeyID" in wanted and current.get("KMSMasterKeyID") != wanted["KMSMasterKeyID"]
    ):
        changed = True
        if ctx.dry_run:
            output.dry_run(f"set {wanted['SSEAlgorithm']} default encryption on {bucket}")
        else:
            s3.put_bucket_encryption(
                Bucket=bucket, ServerSideEncryptionConfiguration={"Rules": [encryption_rule]}
            )
            output.debug(f"Set default encryption on {bucket}")

    try:
        block = s3.get_public_access_block(Bucket=bucket)["PublicAccessBlockConfiguration"]
    except ClientError as e:
        if error_code(e) != "NoSuchPublicAccessBlockConfiguration":
            raise translate_client_error(e) from e
        block = {}
    if block != PUBLIC_ACCESS_BLOCK:
        changed = True
        if ctx.dry_run:
            output.dry_run(f"block public access on {bucket}")
        else:
            s3.put_public_access_block(Bucket=bucket, PublicAccessBlockConfiguration=PUBLIC_ACCESS_BLOCK)
            output.debug(f"Blocked public access on {bucket}")

    return changed


def _ensure_bucket(ctx: BootstrapContext, s3, bucket: str, region: str, encryption_rule: dict) -> EnsureResult:
    if bucket_exists(s3, bucket):
        actual = bucket_region(s3, bucket)
        if actual != region:
            raise ProviderError(f"Bucket {bucket} exists in {actual}, expected {region}", code="WrongRegion")
        changed = _ensure_bucket_settings(ctx, s3, bucket, encryption_rule)
        if not changed:
            output.success(f"Bucket exists: {bucket}")
        return EnsureResult(resource=bucket, changed=changed)

    if ctx.dry_run:
        output.dry_run(f"create bucket {bucket} in {region}")
        return EnsureResult(resource=bucket, created=True)

    created = create_bucket(ctx, s3, bucket, region)
    _ensure_bucket_settings(ctx, s3, bucket, encryption_rule)
    if created:
        output.success(f"Created bucket {bucket}")
    else:
        output.success(f"Bucket exists: {bucket}")
    return EnsureResult(resource=bucket, created=created)


def ensure_state_bucket(ctx: BootstrapContext, s3, backend: BackendSpec, key_arn: str) -> EnsureResult:
    """Ensure the versioned, KMS-encrypted, private state bucket."""
    rule = {
        "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "aws:kms", "KMSMasterKeyID": key_arn},
        "BucketKeyEnabled": True,
    }
    return _ensure_bucket(ctx, s3, backend.bucket, backend.region, rule)


def ensure_central_bucket(ctx: BootstrapContext) -> EnsureResult:
    """Ensure the management account's foundation state bucket."""
    s3 = ctx.clients.management("s3")
    bucket = naming.central_bucket(ctx.config.project_name, ctx.management_account_id)
    rule = {"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
    return _ensure_bucket(ctx, s3, bucket, ctx.config.region, rule)


def _describe_table(ddb, table: str):
    try:
        return ddb.describe_table(TableName=table)["Table"]
    except ClientError as e:
        if error_code(e) == "ResourceNotFoundException":
            return None
        raise translate_client_error(e) from e


def wait_for_table_active(ctx: BootstrapContext, ddb, table: str) -> None:
    def check():
        description = _describe_table(ddb, table)
        return description is not None and description.get("TableStatus") == "ACTIVE"

    poll_until(check, ctx.config.table_active_backoff, ctx.sleep, f"table {table} to become ACTIVE")


def ensure_lock_table(ctx: BootstrapContext, ddb, backend: BackendSpec) -> EnsureResult:
    """Ensure the pay-per-request lock table keyed on LockID."""
    table = _describe_table(ddb, backend.lock_table)
    if table is not None:
        if table.get("TableStatus") != "ACTIVE" and not ctx.dry_run:
            wait_for_table_active(ctx, ddb, backend.lock_table)
        output.success(f"Lock table exists: {backend.lock_table}")
        return EnsureResult(resource=backend.lock_table)

    if ctx.dry_run:
        output.dry_run(f"create lock table {backend.lock_table}")
        return EnsureResult(resource=backend.lock_table, created=True)

    try:
        ddb.create_table(
            TableName=backend.lock_table,
            AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
            KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
            BillingMode="PAY_PER_REQUEST",
            SSESpecification={"Enabled": True},
            Tags=[{"Key": k, "Value": v} for k, v in _tags(ctx, backend.environment).items()],
        )
        created = True
    except ClientError as e:
        # ResourceInUseException here means the table already exists
        if error_code(e) != "ResourceInUseException":
            raise translate_client_error(e) from e
        created = False
    wait_for_table_active(ctx, ddb, backend.lock_table)
    output.success(f"{'Created' if created else 'Found'} lock table {backend.lock_table}")
    return EnsureResult(resource=backend.lock_table, created=created)


def backend_config_text(backend: BackendSpec) -> str:
    return (
        f'bucket         = "{backend.bucket}"\n'
        f'key            = "{backend.state_key}"\n'
        f'region         = "{backend.region}"\n'
        f'dynamodb_table = "{backend.lock_table}"\n'
        f"encrypt        = true\n"
    )


def write_backend_config(output_dir: Path, backend: BackendSpec) -> Path:
    """Write backend-config-{env}.hcl for `terraform init -backend-config=...`."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / naming.backend_config_filename(backend.environment)
    path.write_text(backend_config_text(backend))
    return path


def provision_backend(ctx: BootstrapContext, backend: BackendSpec) -> dict:
    kms = ctx.clients.account(backend.account_id, "kms")
    s3 = ctx.clients.account(backend.account_id, "s3")
    ddb = ctx.clients.account(backend.account_id, "dynamodb")

    key = ensure_kms_key(ctx, kms, backend)
    bucket = ensure_state_bucket(ctx, s3, backend, key.resource)
    table = ensure_lock_table(ctx, ddb, backend)

    details = backend.to_dict()
    details.update(
        {
            "kms_key_arn": key.resource,
            "actions": {"kms_key": key.action, "bucket": bucket.action, "lock_table": table.action},
        }
    )
    if ctx.dry_run:
        output.dry_run(f"write {naming.backend_config_filename(backend.environment)}")
    else:
        path = write_backend_config(ctx.config.output_dir, backend)
        details["backend_config"] = str(path)
        output.success(f"Wrote {path}")
    return details


def provision_backends(ctx: BootstrapContext, accounts: dict) -> PhaseResult:
    """Central bucket plus one backend per environment with a known account."""
    groups = [
        lambda: [
            run_target(
                f"{naming.MANAGEMENT}/central-bucket",
                lambda: {"bucket": ensure_central_bucket(ctx).resource},
            )
        ]
    ]
    for env in ctx.config.environments:
        if not accounts.get(env):
            continue
        backend = backend_spec(ctx, env, accounts[env])
        groups.append(
            lambda backend=backend: [
                run_target(f"{backend.environment}/backend", lambda: provision_backend(ctx, backend))
            ]
        )
    return fan_out_groups("backends", groups, ctx.config.max_workers)


def empty_bucket(ctx: BootstrapContext, s3, bucket: str) -> int:
    """Delete every object version and delete marker. Returns the count removed."""
    deadline = ctx.clock() + ctx.config.s3_timeout
    removed = 0
    while True:
        found = 0
        batch = []
        for page in s3.get_paginator("list_object_versions").paginate(Bucket=bucket):
            for entry in page.get("Versions", []) + page.get("DeleteMarkers", []):
                batch.append({"Key": entry["Key"], "VersionId": entry["VersionId"]})
                if len(batch) == DELETE_BATCH_SIZE:
                    removed += _delete_batch(ctx, s3, bucket, batch)
                    found += len(batch)
                    batch = []
            if ctx.clock() > deadline:
                raise PropagationPending(
                    f"Timed out emptying {bucket} after {ctx.config.s3_timeout}s", code="Timeout"
                )
        if batch:
            removed += _delete_batch(ctx, s3, bucket, batch)
            found += len(batch)
        if not found or ctx.dry_run:
            return removed


def _delete_batch(ctx: BootstrapContext, s3, bucket: str, batch: list) -> int:
    if ctx.dry_run:
        output.dry_run(f"delete {len(batch)} object versions from {bucket}")
        return len(batch)
    response = s3.delete_objects(Bucket=bucket, Delete={"Objects": batch, "Quiet": True})
    errors = response.get("Errors", [])
    if errors:
        first = errors[0]
        raise ProviderError(
            f"Failed to delete {len(errors)} objects from {bucket}: {first.get('Code')} {first.get('Message')}",
            code=first.get("Code", ""),
        )
    output.debug(f"Deleted {len(batch)} object versions from {bucket}")
    return len(batch)


def delete_bucket(ctx: BootstrapContext, s3, bucket: str) -> bool:
    """Empty and delete the bucket. Returns False if it did not exist."""
    try:
        s3.head_bucket(Bucket=bucket)
    except ClientError as e:
        if error_code(e) in BUCKET_MISSING_CODES:
            output.info(f"Bucket not found: {bucket}")
            return False
        raise translate_client_error(e) from e

    removed = empty_bucket(ctx, s3, bucket)
    if removed:
        output.info(f"Removed {removed} object versions from {bucket}")
    if ctx.dry_run:
        output.dry_run(f"delete bucket {bucket}")
        return True
    s3.delete_bucket(Bucket=bucket)
    output.success(f"Deleted bucket {bucket}")
    return True


def delete_lock_table(ctx: BootstrapContext, ddb, table: str) -> bool:
    if _describe_table(ddb, table) is None:
        output.info(f"Lock table not found: {table}")
        return False
    if ctx.dry_run:
        output.dry_run(f"delete lock table {table}")
        return True
    ddb.delete_table(TableName=table)
    output.success(f"Deleted lock table {table}")
    return True


def delete_kms_key(ctx: BootstrapContext, kms, alias: str) -> bool:
    """Delete the alias and schedule the key behind it for deletion."""
    metadata = _key_state(kms, alias)
    if metadata is None:
        output.info(f"KMS alias not found: {alias}")
        return False
    if ctx.dry_run:
        output.dry_run(f"delete {alias} and schedule its key for deletion")
        return True
    kms.delete_alias(AliasName=alias)
    if metadata.get("KeyState") != "PendingDeletion":
        kms.schedule_key_deletion(
            KeyId=metadata["KeyId"], PendingWindowInDays=ctx.config.key_deletion_days
        )
    output.success(
        f"Deleted {alias}, key {metadata['KeyId']} scheduled for deletion in "
        f"{ctx.config.key_deletion_days} days"
    )
    return True


def destroy_backend(ctx: BootstrapContext, backend: BackendSpec) -> list:
    """Lock table, then bucket contents and bucket, then key alias and key.

    Each step is reported separately and a failure does not stop the rest.
    """
    env = backend.environment

    def table():
        ddb = ctx.clients.account(backend.account_id, "dynamodb")
        return {"deleted": delete_lock_table(ctx, ddb, backend.lock_table)}

    def bucket():
        s3 = ctx.clients.account(backend.account_id, "s3")
        return {"deleted": delete_bucket(ctx, s3, backend.bucket)}

    def key():
        kms = ctx.clients.account(backend.account_id, "kms")
        return {"deleted": delete_kms_key(ctx, kms, backend.kms_alias)}

    return [
        run_target(f"{env}/{backend.lock_table}", table),
        run_target(f"{env}/{backend.bucket}", bucket),
        run_target(f"{env}/{backend.kms_alias}", key),
    ]


def destroy_central_bucket(ctx: BootstrapContext) -> bool:
    s3 = ctx.clients.management("s3")
    bucket = naming.central_bucket(ctx.config.project_name, ctx.management_account_id)
    return delete_bucket(ctx, s3, bucket)
