"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from foundation_bootstrap.config import DEFAULT_BACKOFF, load_config, validate
from foundation_bootstrap.errors import ConfigurationError
from foundation_bootstrap.retry import BackoffPolicy

MINIMAL = {
    "project_short_name": "acme",
    "project_name": "acme-site",
    "github_repo": "acme/acme-site",
}


def _write_yaml(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestValidate:
    """validate() builds a config or reports every problem at once."""

    def test_defaults(self) -> None:
        config = validate(dict(MINIMAL))

        assert config.region == "us-east-1"
        assert config.environments == ("dev", "staging", "prod")
        assert config.external_id == "github-actions-acme"
        assert config.enforce_repo_scope is True
        assert config.dry_run is False
        assert config.s3_timeout == 180
        assert config.key_deletion_days == 7
        assert config.account_creation_backoff == DEFAULT_BACKOFF["account_creation"]
        assert config.project_ou_name == "acme-site"

    def test_missing_fields_are_all_reported(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({})

        problems = "\n".join(exc.value.problems)
        assert "project_short_name is required" in problems
        assert "project_name is required" in problems
        assert "github_repo is required" in problems

    def test_length_problems_reported_with_other_problems(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({**MINIMAL, "project_name": "a" * 60, "region": "not-a-region"})

        problems = "\n".join(exc.value.problems)
        assert "region 'not-a-region' is not a valid AWS region name" in problems
        assert "is too long: state bucket" in problems

    def test_rejects_invalid_values(self) -> None:
        raw = {
            **MINIMAL,
            "github_repo": "not-a-repo",
            "region": "mars-1",
            "management_account_id": "12345",
            "account_ids": {"dev": "abc"},
        }
        with pytest.raises(ConfigurationError) as exc:
            validate(raw)

        assert len(exc.value.problems) == 4

    def test_rejects_bad_bucket_prefix(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({**MINIMAL, "project_name": "Acme_Site"})

        assert "not a valid bucket name prefix" in exc.value.problems[0]

    def test_management_is_a_reserved_environment(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({**MINIMAL, "environments": ["dev", "management"]})

        assert any("reserved" in p for p in exc.value.problems)

    def test_duplicate_environments(self) -> None:
        with pytest.raises(ConfigurationError):
            validate({**MINIMAL, "environments": ["dev", "dev"]})

    def test_environments_from_comma_string(self) -> None:
        config = validate({**MINIMAL, "environments": "dev, prod"})

        assert config.environments == ("dev", "prod")

    def test_account_id_for_unknown_environment(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({**MINIMAL, "environments": ["dev"], "account_ids": {"qa": "123456789012"}})

        assert "account_ids.qa" in exc.value.problems[0]

    def test_project_name_too_long_for_bucket(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({**MINIMAL, "project_name": "a" * 40})

        assert any("exceeds 63 characters" in p for p in exc.value.problems)

    def test_short_name_too_long_for_role(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({**MINIMAL, "project_short_name": "x" * 50})

        assert any("exceeds 64 characters" in p for p in exc.value.problems)

    def test_key_deletion_window_bounds(self) -> None:
        with pytest.raises(ConfigurationError):
            validate({**MINIMAL, "key_deletion_days": 3})
        assert validate({**MINIMAL, "key_deletion_days": 30}).key_deletion_days == 30

    def test_backoff_overrides(self) -> None:
        config = validate({**MINIMAL, "backoff": {"account_active": {"max_attempts": 3, "interval": 1}}})

        assert config.account_active_backoff == BackoffPolicy(max_attempts=3, interval=1)
        assert config.transient_backoff == DEFAULT_BACKOFF["transient"]

    def test_invalid_backoff(self) -> None:
        with pytest.raises(ConfigurationError) as exc:
            validate({**MINIMAL, "backoff": {"transient": {"interval": 1}}})

        assert "backoff.transient" in exc.value.problems[0]

    def test_adoption_mode(self) -> None:
        ids = {"dev": "111111111111", "staging": "222222222222", "prod": "333333333333"}

        assert validate({**MINIMAL, "account_ids": ids}).adoption_mode is True
        assert validate({**MINIMAL, "account_ids": {"dev": "111111111111"}}).adoption_mode is False


class TestLoadConfig:
    """Precedence is file, then environment, then command-line overrides."""

    def test_reads_yaml(self, tmp_path: Path) -> None:
        path = _write_yaml(
            tmp_path,
            "project_short_name: acme\n"
            "project_name: acme-site\n"
            "github_repo: acme/acme-site\n"
            "environments: [dev, prod]\n"
            "account_ids:\n"
            "  dev: '822529998967'\n",
        )

        config = load_config(path=path, environ={})

        assert config.environments == ("dev", "prod")
        assert config.account_ids == {"dev": "822529998967"}

    def test_environment_overrides_file(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "project_short_name: acme\nproject_name: acme-site\ngithub_repo: acme/acme-site\n")
        environ = {"AWS_DEFAULT_REGION": "eu-west-1", "AWS_ACCOUNT_ID_PROD": "333333333333", "DRY_RUN": "true"}

        config = load_config(path=path, environ=environ)

        assert config.region == "eu-west-1"
        assert config.account_ids == {"prod": "333333333333"}
        assert config.dry_run is True

    def test_overrides_win(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "project_short_name: acme\nproject_name: acme-site\ngithub_repo: acme/acme-site\n")

        config = load_config(
            path=path, overrides={"region": "us-west-2"}, environ={"AWS_DEFAULT_REGION": "eu-west-1"}
        )

        assert config.region == "us-west-2"

    def test_account_ids_are_merged_across_layers(self, tmp_path: Path) -> None:
        path = _write_yaml(
            tmp_path,
            "project_short_name: acme\nproject_name: acme-site\ngithub_repo: acme/acme-site\n"
            "account_ids:\n  dev: '111111111111'\n",
        )

        config = load_config(path=path, environ={"AWS_ACCOUNT_ID_STAGING": "222222222222"})

        assert config.account_ids == {"dev": "111111111111", "staging": "222222222222"}

    def test_environment_only(self, tmp_path: Path) -> None:
        environ = {
            "PROJECT_SHORT_NAME": "acme",
            "PROJECT_NAME": "acme-site",
            "GITHUB_REPO": "acme/acme-site",
        }

        config = load_config(path=tmp_path / "missing.yaml", environ=environ)

        assert config.repository == "acme/acme-site"

    def test_config_path_from_environment(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "project_short_name: acme\nproject_name: acme-site\ngithub_repo: acme/acme-site\n")

        config = load_config(environ={"BOOTSTRAP_CONFIG": str(path)})

        assert config.project_name == "acme-site"

    def test_non_mapping_yaml(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, "- just\n- a list\n")

        with pytest.raises(ConfigurationError):
            load_config(path=path, environ={})
