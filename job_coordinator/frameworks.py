from __future__ import annotations

import shlex
import sys
from pathlib import Path

from job_coordinator.errors import SpawnError
from job_coordinator.models import FailureClassification

# Placeholders: {python} {target} {workdir} {job_id}
DEFAULT_COMMANDS: dict[str, str] = {
    "pytest": "{python} -m pytest -v --tb=short -p no:cacheprovider {target}",
    "gdunit4": (
        "godot --headless --path {workdir} "
        "-s res://addons/gdUnit4/bin/GdUnitCmdTool.gd --test-suite {target}"
    ),
    "junit": "{target}",
    "jsonl": "{target}",
    "command": "{target}",
}

# Targets of these frameworks are whole command lines, not a single argument.
_COMMAND_TARGETS = {"junit", "jsonl", "command"}


def command_template(framework: str, overrides: dict[str, str] | None = None) -> str:
    overrides = overrides or {}
    template = overrides.get(framework) or DEFAULT_COMMANDS.get(framework)
    if template is None:
        raise SpawnError(
            f"no runner command configured for framework {framework!r}",
            classification=FailureClassification.missing_dependency,
        )
    return template


def build_command(
    *,
    framework: str,
    target: str,
    workdir: Path,
    job_id: str,
    overrides: dict[str, str] | None = None,
) -> list[str]:
    """Render the runner argv for one attempt."""

    stripped = command_template(framework, overrides).strip()
    if not stripped:
        raise SpawnError(
            "runner command template is empty",
            classification=FailureClassification.missing_dependency,
        )
    quoted_target = target if framework in _COMMAND_TARGETS else shlex.quote(target)
    try:
        rendered = stripped.format(
            python=shlex.quote(sys.executable),
            target=quoted_target,
            workdir=shlex.quote(str(workdir)),
            job_id=shlex.quote(job_id),
        )
    except (KeyError, IndexError) as error:
        raise SpawnError(
            f"unsupported command template placeholder: {error}",
            classification=FailureClassification.missing_dependency,
        ) from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise SpawnError(
            f"runner command could not be parsed: {error}",
            classification=FailureClassification.missing_dependency,
        ) from error
    if not argv:
        raise SpawnError(
            "runner command template rendered empty command",
            classification=FailureClassification.missing_dependency,
        )
    return argv
