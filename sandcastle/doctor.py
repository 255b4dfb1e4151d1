"""
sandcastle doctor - can this machine run sandboxes?

Checks, in order:
1. Interpreter and installed packages
2. Settings resolve from SANDCASTLE_* variables
3. A container engine answers (Podman or Docker)
4. Registry account (decides where agent images are pulled from)
5. Build definitions for every agent type

Engine-dependent checks are skipped when settings do not resolve.

Usage:
    sandcastle doctor
    sandcastle doctor --verbose
    sandcastle doctor --json
"""
from __future__ import annotations

import asyncio
import importlib.util
import sys
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from sandcastle.config import Settings
from sandcastle.engine.connection import EngineConnection
from sandcastle.exceptions import ConfigurationError, EngineError
from sandcastle.models import AGENT_TYPES
from sandcastle.sandbox.image import dockerfile_path

Severity = Literal["error", "warning", "info"]

MIN_PYTHON = (3, 9)
REQUIRED_PACKAGES = ("pydantic",)
OPTIONAL_PACKAGES = {"logfire": "telemetry"}


@dataclass
class Finding:
    """Outcome of one check. A failed `error` finding fails the run."""
    name: str
    passed: bool
    message: str
    severity: Severity = "error"
    details: Optional[Dict[str, Any]] = None


@dataclass
class DoctorReport:
    findings: List[Finding] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return sum(1 for f in self.findings if not f.passed and f.severity == "error")

    @property
    def warnings(self) -> int:
        return sum(1 for f in self.findings if not f.passed and f.severity == "warning")

    @property
    def passed(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "errors": self.errors,
            "warnings": self.warnings,
            "checks": [asdict(f) for f in self.findings],
        }


def check_interpreter() -> List[Finding]:
    current = ".".join(str(part) for part in sys.version_info[:3])
    wanted = ".".join(str(part) for part in MIN_PYTHON)
    findings = [
        Finding(
            name="python_version",
            passed=sys.version_info >= MIN_PYTHON,
            message=f"Python {current}" + ("" if sys.version_info >= MIN_PYTHON else f" (needs {wanted}+)"),
        )
    ]

    absent = [pkg for pkg in REQUIRED_PACKAGES if importlib.util.find_spec(pkg) is None]
    findings.append(
        Finding(
            name="required_dependencies",
            passed=not absent,
            message=f"Not installed: {', '.join(absent)}" if absent else "Required packages present",
            details={"missing": absent} if absent else None,
        )
    )

    extras = {
        pkg: importlib.util.find_spec(pkg) is not None for pkg in OPTIONAL_PACKAGES
    }
    findings.append(
        Finding(
            name="optional_dependencies",
            passed=True,
            message=", ".join(
                f"{pkg} ({OPTIONAL_PACKAGES[pkg]}): {'yes' if present else 'no'}"
                for pkg, present in extras.items()
            ),
            severity="info",
        )
    )
    return findings


def check_settings() -> Tuple[Finding, Optional[Settings]]:
    """Resolve settings from the environment."""
    try:
        settings = Settings.load()
    except ConfigurationError as e:
        return Finding(name="settings", passed=False, message=e.message), None
    return (
        Finding(
            name="settings",
            passed=True,
            message="Settings resolved",
            severity="info",
            details={
                "runtime": settings.runtime or "auto",
                "prefer_registry": settings.prefer_registry,
                "push_images": settings.push_images,
                "config_path": str(settings.config_path),
            },
        ),
        settings,
    )


async def _probe_engine(settings: Settings) -> List[Finding]:
    try:
        connection = await EngineConnection.open(
            "doctor", runtime=settings.runtime, timeout=settings.connection_timeout
        )
    except EngineError as e:
        return [Finding(name="container_runtime", passed=False, message=e.message)]

    try:
        status = await connection.login_status()
    finally:
        await connection.close()

    runtime = connection.runtime.value
    findings = [
        Finding(
            name="container_runtime",
            passed=True,
            message=f"{runtime.capitalize()} available",
            details={"runtime": runtime},
        )
    ]

    account = settings.registry_user or settings.local_config().registry_user
    if account:
        login = Finding(
            name="registry_login",
            passed=True,
            message=f"Registry account configured: {account}",
            severity="info",
        )
    elif status.logged_in:
        login = Finding(
            name="registry_login",
            passed=True,
            message=f"Logged in as {status.username}",
            severity="info",
            details={"registry": status.registry},
        )
    else:
        login = Finding(
            name="registry_login",
            passed=False,
            message=(
                "Not logged in; images come from the "
                f"'{settings.default_registry_user}' account"
            ),
            severity="warning",
        )
    findings.append(login)
    return findings


def check_engine(settings: Settings) -> List[Finding]:
    """Check the container runtime answers and report the registry account."""
    return asyncio.run(_probe_engine(settings))


def check_dockerfiles(settings: Settings) -> Finding:
    missing = [a for a in AGENT_TYPES if not dockerfile_path(settings, a).is_file()]
    if missing:
        return Finding(
            name="build_definitions",
            passed=False,
            message=f"No build definition for: {', '.join(missing)}",
            severity="warning",
            details={"directory": str(settings.dockerfiles_dir), "missing": missing},
        )
    return Finding(
        name="build_definitions",
        passed=True,
        message=f"Build definitions for all {len(AGENT_TYPES)} agents",
        details={"directory": str(settings.dockerfiles_dir)},
    )


def run_doctor() -> DoctorReport:
    report = DoctorReport()
    report.findings.extend(check_interpreter())

    settings_finding, settings = check_settings()
    report.findings.append(settings_finding)
    if settings is not None:
        report.findings.extend(check_engine(settings))
        report.findings.append(check_dockerfiles(settings))
    return report


_ICONS = {True: "✓", "warning": "⚠", "error": "✗", "info": "·"}


def print_report(report: DoctorReport, verbose: bool = False) -> None:
    print("\nsandcastle doctor\n")
    for finding in report.findings:
        icon = _ICONS[True] if finding.passed else _ICONS[finding.severity]
        print(f"  {icon} {finding.name}: {finding.message}")
        if verbose and finding.details:
            for key, value in finding.details.items():
                shown = ", ".join(map(str, value)) if isinstance(value, list) else value
                print(f"      {key}: {shown}")

    summary = f"{report.errors} errors, {report.warnings} warnings"
    print(f"\nStatus: {'OK' if report.passed else 'FAILED'} ({summary})\n")
