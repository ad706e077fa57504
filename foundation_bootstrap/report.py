"""Run reports and console links written to the output directory."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from . import naming
from .config import BootstrapConfig
from .verification import VerificationReport

BOOTSTRAP_REPORT = "bootstrap-report.json"
VERIFICATION_REPORT = "verification-report.json"
CONSOLE_URLS = "console-urls.txt"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def console_urls(config: BootstrapConfig, accounts: dict) -> dict:
    return {
        env: naming.console_url(config.project_short_name, env, accounts[env])
        for env in config.environments
        if accounts.get(env)
    }


@dataclass
class BootstrapReport:
    timestamp: str
    management_account_id: str
    accounts: dict = field(default_factory=dict)
    backends: dict = field(default_factory=dict)
    role_arns: dict = field(default_factory=dict)
    console_urls: dict = field(default_factory=dict)
    phases: list = field(default_factory=list)
    verification: Optional[VerificationReport] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        phases_ok = all(p.succeeded for p in self.phases)
        verified = self.verification is None or self.verification.passed
        return phases_ok and verified

    @property
    def status(self) -> str:
        if self.succeeded:
            return "success"
        if any(r.succeeded for p in self.phases for r in p.results):
            return "partial"
        return "failed"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "status": self.status,
            "duration_seconds": round(self.duration_seconds, 1),
            "accounts": {naming.MANAGEMENT: self.management_account_id, **self.accounts},
            "backends": self.backends,
            "role_arns": self.role_arns,
            "console_urls": self.console_urls,
            "stages_completed": [p.name for p in self.phases if p.succeeded],
            "stages_failed": [p.name for p in self.phases if not p.succeeded],
            "phases": [p.to_dict() for p in self.phases],
            "verification": self.verification.to_dict() if self.verification else None,
        }


def _write_json(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    return path


def write_bootstrap_report(output_dir: Path, report: BootstrapReport) -> Path:
    return _write_json(Path(output_dir) / BOOTSTRAP_REPORT, report.to_dict())


def write_verification_report(output_dir: Path, report: VerificationReport) -> Path:
    data = {"timestamp": utc_timestamp(), **report.to_dict()}
    return _write_json(Path(output_dir) / VERIFICATION_REPORT, data)


def write_console_urls(output_dir: Path, config: BootstrapConfig, accounts: dict) -> Path:
    lines = [f"Read-only console access for {config.repository}", ""]
    for env, url in console_urls(config, accounts).items():
        lines.append(f"{env}: {url}")
    path = Path(output_dir) / CONSOLE_URLS
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")
    return path
