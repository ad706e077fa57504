"""Tests for OIDC providers, role rendering and role convergence."""

from __future__ import annotations

import json

import pytest
from botocore.exceptions import EndpointConnectionError

from fakes import DEV_ID, MANAGEMENT_ID, client_error
from foundation_bootstrap import naming
from foundation_bootstrap.errors import TemplateError
from foundation_bootstrap.identity import (
    READONLY_MANAGED_POLICY,
    delete_role,
    ensure_oidc_provider,
    ensure_role,
    provision_identity,
    render_role,
    role_specs,
)
from foundation_bootstrap.models import RolePurpose
from foundation_bootstrap.templates import SUBJECT_KEY

SUBJECT = "repo:acme/acme-site:*"


def _subjects(trust: dict) -> list:
    return [
        s["Condition"]["StringLike"][SUBJECT_KEY]
        for s in trust["Statement"]
        if s["Action"] == "sts:AssumeRoleWithWebIdentity"
    ]


class TestRoleSpecs:
    def test_roles_per_account(self, make_ctx, accounts) -> None:
        specs = role_specs(make_ctx().config, accounts)

        names = [(s.account_id, s.name) for s in specs]
        assert names[0] == (MANAGEMENT_ID, "GitHubActions-Acme-Central-Role")
        assert (DEV_ID, "GitHubActions-Acme-Dev-Role") in names
        assert (DEV_ID, "Acme-dev") in names
        assert len(specs) == 7

    def test_environments_without_accounts_are_skipped(self, make_ctx) -> None:
        specs = role_specs(make_ctx().config, {"dev": DEV_ID})

        assert {s.environment for s in specs} == {"management", "dev"}


class TestRender:
    def test_deployment_trust_binds_repository(self, make_ctx, accounts) -> None:
        config = make_ctx().config
        spec = next(s for s in role_specs(config, accounts) if s.purpose == RolePurpose.DEPLOYMENT)

        rendered = render_role(config, spec)

        assert _subjects(rendered.trust) == [SUBJECT]
        assert rendered.permissions["Version"] == "2012-10-17"

    def test_environment_scoped_subject(self, make_ctx, accounts) -> None:
        config = make_ctx(enforce_repo_scope=False).config
        specs = role_specs(config, accounts)
        deployment = next(s for s in specs if s.purpose == RolePurpose.DEPLOYMENT and s.environment == "dev")
        central = next(s for s in specs if s.purpose == RolePurpose.CENTRAL_BOOTSTRAP)

        assert _subjects(render_role(config, deployment).trust) == ["repo:acme/acme-site:environment:dev"]
        assert _subjects(render_role(config, central).trust) == [SUBJECT]

    def test_readonly_role_uses_managed_policy(self, make_ctx, accounts) -> None:
        config = make_ctx().config
        spec = next(s for s in role_specs(config, accounts) if s.purpose == RolePurpose.READONLY_CONSOLE)

        rendered = render_role(config, spec)

        assert rendered.permissions is None
        assert spec.managed_policies == (READONLY_MANAGED_POLICY,)
        assert rendered.trust["Statement"][0]["Principal"]["AWS"] == f"arn:aws:iam::{MANAGEMENT_ID}:root"


class TestOidcProvider:
    def test_created_once(self, cloud, make_ctx) -> None:
        ctx = make_ctx()
        iam = cloud.client(DEV_ID, "iam")

        assert ensure_oidc_provider(ctx, iam, DEV_ID).created
        second = ensure_oidc_provider(ctx, iam, DEV_ID)

        assert not second.created and not second.changed
        provider = cloud.iam_state(DEV_ID)["oidc"][naming.oidc_provider_arn(DEV_ID)]
        assert provider["ClientIDList"] == ["sts.amazonaws.com"]

    def test_missing_audience_is_added(self, cloud, make_ctx) -> None:
        cloud.iam_state(DEV_ID)["oidc"][naming.oidc_provider_arn(DEV_ID)] = {
            "Url": naming.OIDC_PROVIDER_URL,
            "ClientIDList": [],
            "ThumbprintList": [naming.OIDC_THUMBPRINT],
        }

        result = ensure_oidc_provider(make_ctx(), cloud.client(DEV_ID, "iam"), DEV_ID)

        assert result.changed
        assert "add_client_id_to_open_id_connect_provider" in cloud.methods("iam")
        assert "create_open_id_connect_provider" not in cloud.methods("iam")


class TestEnsureRole:
    def _rendered(self, ctx, accounts, purpose=RolePurpose.DEPLOYMENT):
        spec = next(
            s for s in role_specs(ctx.config, accounts) if s.purpose == purpose and s.account_id == DEV_ID
        )
        return render_role(ctx.config, spec)

    def test_create_then_converged(self, cloud, make_ctx, accounts) -> None:
        ctx = make_ctx()
        rendered = self._rendered(ctx, accounts)
        iam = cloud.client(DEV_ID, "iam")

        assert ensure_role(ctx, iam, rendered).action == "created"
        before = len(cloud.mutating_calls())
        assert ensure_role(ctx, iam, rendered).action == "unchanged"
        assert len(cloud.mutating_calls()) == before

        role = cloud.iam_state(DEV_ID)["roles"]["GitHubActions-Acme-Dev-Role"]
        assert role["inline"]["DeploymentPolicy"] == rendered.permissions

    def test_trust_drift_is_repaired(self, cloud, make_ctx, accounts) -> None:
        ctx = make_ctx()
        rendered = self._rendered(ctx, accounts)
        iam = cloud.client(DEV_ID, "iam")
        ensure_role(ctx, iam, rendered)
        role = cloud.iam_state(DEV_ID)["roles"]["GitHubActions-Acme-Dev-Role"]
        role["trust"]["Statement"][0]["Condition"]["StringLike"][SUBJECT_KEY] = "repo:*"

        result = ensure_role(ctx, iam, rendered)

        assert result.action == "updated"
        repaired = cloud.iam_state(DEV_ID)["roles"]["GitHubActions-Acme-Dev-Role"]["trust"]
        assert _subjects(repaired) == [SUBJECT]
        # permissions were unchanged, so only the initial put happened
        assert cloud.methods("iam").count("put_role_policy") == 1

    def test_permission_drift_is_repaired(self, cloud, make_ctx, accounts) -> None:
        ctx = make_ctx()
        rendered = self._rendered(ctx, accounts)
        iam = cloud.client(DEV_ID, "iam")
        ensure_role(ctx, iam, rendered)
        cloud.iam_state(DEV_ID)["roles"]["GitHubActions-Acme-Dev-Role"]["inline"]["DeploymentPolicy"] = {
            "Version": "2012-10-17",
            "Statement": [],
        }

        assert ensure_role(ctx, iam, rendered).action == "updated"
        assert cloud.iam_state(DEV_ID)["roles"]["GitHubActions-Acme-Dev-Role"]["inline"]["DeploymentPolicy"] == (
            rendered.permissions
        )

    def test_readonly_role_gets_managed_policy(self, cloud, make_ctx, accounts) -> None:
        ctx = make_ctx()
        rendered = self._rendered(ctx, accounts, RolePurpose.READONLY_CONSOLE)

        ensure_role(ctx, cloud.client(DEV_ID, "iam"), rendered)

        role = cloud.iam_state(DEV_ID)["roles"]["Acme-dev"]
        assert role["attached"] == [READONLY_MANAGED_POLICY]
        assert role["inline"] == {}

    def test_create_retries_until_principal_propagates(self, cloud, clock, make_ctx, accounts) -> None:
        ctx = make_ctx()
        cloud.fail(
            DEV_ID,
            "iam",
            "create_role",
            client_error("MalformedPolicyDocument", "Invalid principal in policy"),
            times=2,
        )

        result = ensure_role(ctx, cloud.client(DEV_ID, "iam"), self._rendered(ctx, accounts))

        assert result.created
        assert len(clock.sleeps) == 2

    def test_delete_role_removes_policies_first(self, cloud, make_ctx, accounts) -> None:
        ctx = make_ctx()
        iam = cloud.client(DEV_ID, "iam")
        ensure_role(ctx, iam, self._rendered(ctx, accounts, RolePurpose.READONLY_CONSOLE))

        assert delete_role(ctx, iam, "Acme-dev")
        assert "Acme-dev" not in cloud.iam_state(DEV_ID)["roles"]
        assert not delete_role(ctx, iam, "Acme-dev")


class TestProvisionIdentity:
    def test_full_run_is_idempotent(self, cloud, make_ctx, accounts) -> None:
        ctx = make_ctx()

        first = provision_identity(ctx, accounts)
        mutations = len(cloud.mutating_calls())
        second = provision_identity(ctx, accounts)

        assert first.succeeded and second.succeeded
        assert len(first.results) == 2 + 3 * 3
        assert len(cloud.mutating_calls()) == mutations
        assert {r.details["action"] for r in second.results if "action" in r.details} == {"unchanged"}

    def test_inaccessible_account_is_isolated(self, cloud, make_ctx, accounts) -> None:
        cloud.inaccessible.add(accounts["staging"])

        phase = provision_identity(make_ctx(), accounts)

        failed = {r.target.split("/")[0] for r in phase.failed}
        assert failed == {"staging"}
        assert cloud.iam_state(accounts["prod"])["roles"]

    def test_connection_failure_is_isolated(self, cloud, make_ctx, accounts) -> None:
        cloud.fail(
            DEV_ID,
            "iam",
            "get_open_id_connect_provider",
            EndpointConnectionError(endpoint_url="https://iam.amazonaws.com"),
        )

        phase = provision_identity(make_ctx(), accounts)

        failed = {r.target.split("/")[0] for r in phase.failed}
        assert failed == {"dev"}
        assert "EndpointConnectionError" in phase.failed[0].error
        assert cloud.iam_state(accounts["staging"])["roles"]
        assert cloud.iam_state(accounts["prod"])["roles"]

    def test_template_error_aborts_before_any_call(self, cloud, make_ctx, accounts, monkeypatch) -> None:
        ctx = make_ctx()

        def broken(config, spec):
            raise TemplateError(["deployment-trust: placeholder {{account_id}} has no value"])

        monkeypatch.setattr("foundation_bootstrap.identity.render_role", broken)

        with pytest.raises(TemplateError):
            provision_identity(ctx, accounts)
        assert cloud.calls == []

    def test_trust_document_sent_to_iam(self, cloud, make_ctx, accounts) -> None:
        provision_identity(make_ctx(), {"dev": DEV_ID})

        create = next(
            c for c in cloud.calls if c.method == "create_role" and c.kwargs["RoleName"] == "GitHubActions-Acme-Dev-Role"
        )
        assert _subjects(json.loads(create.kwargs["AssumeRolePolicyDocument"])) == [SUBJECT]
        assert create.kwargs["MaxSessionDuration"] == 3600
