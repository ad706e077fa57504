"""Tests for policy template rendering and subject validation."""

from __future__ import annotations

import pytest

from foundation_bootstrap.errors import TemplateError
from foundation_bootstrap.templates import (
    SUBJECT_KEY,
    PolicyTemplate,
    TemplateContext,
    document_hash,
    load_template,
    oidc_subject,
    parse_document,
    validate_subjects,
)


def _context(**overrides) -> TemplateContext:
    values = {
        "account_id": "822529998967",
        "repository": "acme/acme-site",
        "external_id": "github-actions-acme",
        "project_name": "acme-site",
        "project_short_name": "acme",
        "environment": "dev",
        "region": "us-east-1",
        "management_account_id": "111111111111",
        "oidc_subject": "repo:acme/acme-site:*",
    }
    values.update(overrides)
    return TemplateContext(**values)


def _web_identity(subject) -> dict:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {"StringLike": {SUBJECT_KEY: subject}},
            }
        ],
    }


class TestOidcSubject:
    def test_repository_scope(self) -> None:
        assert oidc_subject("acme/acme-site", "dev", True) == "repo:acme/acme-site:*"

    def test_environment_scope(self) -> None:
        assert oidc_subject("acme/acme-site", "dev", False) == "repo:acme/acme-site:environment:dev"

    def test_no_environment_falls_back_to_repository(self) -> None:
        assert oidc_subject("acme/acme-site", None, False) == "repo:acme/acme-site:*"

    def test_empty_repository_is_rejected(self) -> None:
        with pytest.raises(TemplateError):
            oidc_subject("", "dev", True)


class TestRender:
    def test_deployment_trust(self) -> None:
        document = load_template("deployment-trust").render(_context())

        oidc, management = document["Statement"]
        assert oidc["Principal"]["Federated"] == (
            "arn:aws:iam::822529998967:oidc-provider/token.actions.githubusercontent.com"
        )
        assert oidc["Condition"]["StringLike"][SUBJECT_KEY] == "repo:acme/acme-site:*"
        assert oidc["Condition"]["StringEquals"]["token.actions.githubusercontent.com:aud"] == "sts.amazonaws.com"
        assert management["Principal"]["AWS"] == "arn:aws:iam::111111111111:root"
        assert management["Condition"]["StringEquals"]["sts:ExternalId"] == "github-actions-acme"

    def test_deployment_permissions_are_scoped_to_project(self) -> None:
        document = load_template("deployment-permissions").render(_context())

        text = str(document)
        assert "acme-site-state-dev-822529998967" in text
        assert "acme-site-locks-dev" in text
        assert "{{" not in text

    def test_every_shipped_template_renders(self) -> None:
        for name in (
            "deployment-trust",
            "deployment-permissions",
            "readonly-trust",
            "central-trust",
            "central-permissions",
        ):
            assert load_template(name).render(_context())["Version"] == "2012-10-17"

    def test_unknown_placeholder(self) -> None:
        template = PolicyTemplate("bad", '{"Version": "2012-10-17", "Statement": [], "X": "{{bogus}}"}')

        with pytest.raises(TemplateError) as exc:
            template.render(_context())

        assert "unknown placeholder {{bogus}}" in exc.value.problems[0]

    def test_empty_value(self) -> None:
        with pytest.raises(TemplateError) as exc:
            load_template("deployment-trust").render(_context(management_account_id=""))

        assert "management_account_id" in exc.value.problems[0]

    def test_values_are_json_escaped(self) -> None:
        template = PolicyTemplate("quoted", '{"Statement": [], "Name": "{{project_name}}"}')

        document = template.render(_context(project_name='a"b'))

        assert document["Name"] == 'a"b'

    def test_invalid_json(self) -> None:
        with pytest.raises(TemplateError):
            PolicyTemplate("broken", '{"Statement": [}').render(_context())

    def test_missing_template(self) -> None:
        with pytest.raises(TemplateError):
            load_template("no-such-template")

    def test_wildcard_subject_is_rejected(self) -> None:
        with pytest.raises(TemplateError):
            load_template("deployment-trust").render(_context(oidc_subject="*"))


class TestValidateSubjects:
    def test_accepts_repository_subjects(self) -> None:
        validate_subjects("t", _web_identity("repo:acme/acme-site:*"), "acme/acme-site")
        validate_subjects(
            "t", _web_identity(["repo:acme/acme-site:ref:refs/heads/main"]), "acme/acme-site"
        )

    @pytest.mark.parametrize("subject", ["", "*", "repo:*", "repo:other/repo:*", "repo:acme/acme-site-fork:*"])
    def test_rejects_unbound_subjects(self, subject: str) -> None:
        with pytest.raises(TemplateError):
            validate_subjects("t", _web_identity(subject), "acme/acme-site")

    def test_web_identity_without_subject(self) -> None:
        document = {"Statement": [{"Effect": "Allow", "Action": ["sts:AssumeRoleWithWebIdentity"]}]}

        with pytest.raises(TemplateError):
            validate_subjects("t", document, "acme/acme-site")

    def test_wildcard_repository(self) -> None:
        with pytest.raises(TemplateError):
            validate_subjects("t", _web_identity("repo:acme/*:*"), "acme/*")


class TestDocuments:
    def test_hash_ignores_key_order(self) -> None:
        assert document_hash({"a": 1, "b": [1, 2]}) == document_hash({"b": [1, 2], "a": 1})

    def test_parse_url_encoded(self) -> None:
        assert parse_document("%7B%22Version%22%3A%20%222012-10-17%22%7D") == {"Version": "2012-10-17"}

    def test_parse_plain(self) -> None:
        assert parse_document('{"a": 1}') == {"a": 1}
        assert parse_document(None) == {}
