"""
Policy document templates.

Templates live in templates/*.json.tpl and use ``{{placeholder}}`` names.
Rendering fails closed: an unknown placeholder, a missing or empty value, a
document that is not valid JSON, or a web-identity subject that does not
bind to the configured repository all raise TemplateError before any API
call is made.
"""

import hashlib
import json
import re
from dataclasses import dataclass, fields
from functools import lru_cache
from importlib import resources
from typing import Optional
from urllib.parse import unquote

from . import naming
from .errors import TemplateError

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
SUBJECT_KEY = f"{naming.OIDC_PROVIDER_HOST}:sub"


@dataclass(frozen=True)
class TemplateContext:
    account_id: str
    repository: str
    external_id: str
    project_name: str
    project_short_name: str
    environment: str
    region: str
    management_account_id: str
    oidc_subject: str

    @classmethod
    def names(cls) -> set:
        return {f.name for f in fields(cls)}


def oidc_subject(repository: str, environment: Optional[str], enforce_repo_scope: bool) -> str:
    """Subject pattern a GitHub Actions token must match to assume a role.

    Repository scope admits any ref or environment of the repository.
    Without it the subject is narrowed to one GitHub environment.
    """
    if not repository:
        raise TemplateError(["cannot build an OIDC subject without a repository"])
    if enforce_repo_scope or not environment:
        return f"repo:{repository}:*"
    return f"repo:{repository}:environment:{environment}"


@dataclass(frozen=True)
class PolicyTemplate:
    name: str
    body: str

    @property
    def placeholders(self) -> set:
        return set(PLACEHOLDER_RE.findall(self.body))

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.body.encode("utf-8")).hexdigest()

    def render(self, context: TemplateContext) -> dict:
        problems = []
        known = TemplateContext.names()
        for name in sorted(self.placeholders):
            if name not in known:
                problems.append(f"{self.name}: unknown placeholder {{{{{name}}}}}")
            elif not str(getattr(context, name) or "").strip():
                problems.append(f"{self.name}: placeholder {{{{{name}}}}} has no value")
        if problems:
            raise TemplateError(problems)

        def substitute(match):
            value = str(getattr(context, match.group(1)))
            # escape for inclusion inside a JSON string literal
            return json.dumps(value)[1:-1]

        text = PLACEHOLDER_RE.sub(substitute, self.body)
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise TemplateError([f"{self.name}: rendered document is not valid JSON ({e})"])

        validate_subjects(self.name, document, context.repository)
        return document


def _statements(document: dict) -> list:
    statements = document.get("Statement", [])
    if isinstance(statements, dict):
        return [statements]
    return statements


def _as_list(value) -> list:
    if isinstance(value, list):
        return value
    return [value]


def validate_subjects(template_name: str, document: dict, repository: str) -> None:
    """Every web-identity statement must pin its subject to the repository."""
    problems = []
    prefix = f"repo:{repository}:"
    for index, statement in enumerate(_statements(document)):
        actions = _as_list(statement.get("Action", []))
        subjects = []
        for operator in (statement.get("Condition") or {}).values():
            for key, value in operator.items():
                if key == SUBJECT_KEY:
                    subjects.extend(_as_list(value))

        if "sts:AssumeRoleWithWebIdentity" in actions and not subjects:
            problems.append(f"{template_name}: statement {index} has no subject condition")
        for subject in subjects:
            subject = str(subject)
            if (
                not repository
                or "*" in repository
                or subject.strip() in ("", "*", "repo:*")
                or not subject.startswith(prefix)
            ):
                problems.append(
                    f"{template_name}: statement {index} subject {subject!r} "
                    f"does not bind to repository {repository!r}"
                )
    if problems:
        raise TemplateError(problems)


@lru_cache(maxsize=None)
def load_template(name: str) -> PolicyTemplate:
    path = resources.files(__package__) / "templates" / f"{name}.json.tpl"
    try:
        body = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise TemplateError([f"policy template {name!r} not found"])
    return PolicyTemplate(name=name, body=body)


def canonical_json(document: dict) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def document_hash(document: dict) -> str:
    """SHA-256 of a policy document's canonical JSON form."""
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


def parse_document(document) -> dict:
    """Policy documents come back from IAM as dicts or URL-encoded JSON."""
    if document is None:
        return {}
    if isinstance(document, dict):
        return document
    text = document
    if text.lstrip().startswith("%7B") or "%22" in text:
        text = unquote(text)
    return json.loads(text)


def pretty_json(document: dict) -> str:
    return json.dumps(document, indent=2, sort_keys=True)
