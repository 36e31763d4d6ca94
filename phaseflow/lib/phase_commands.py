"""
Phase command configuration.

Loads .phaseflow/phases.yaml to determine which CLI command runs each phase.
If no config file exists, returns defaults that drive the claude CLI with one
slash command per phase.

PHASE COMMAND TEMPLATES
=======================

Each phase maps to a command template. Templates support {variable}
substitution; the caller provides a context dict.

Variables:
- {issue}: Issue number.
- {worktree}: Path to the issue's worktree (the command also runs there).
- {phase}: Phase name.
- {accelerators}: Optional extra arguments from ACCELERATOR_ARGS in
  settings.env (e.g. an MCP server config). Substituted empty on the final
  fallback attempt after repeated cold-start failures.

Values are shell-quoted before substitution, except {accelerators}, which is
split into separate arguments.

Example phases.yaml:

    phases:
      implement: aider --yes --message "/implement {issue}"
      review: ./scripts/review.sh {issue}
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from phaseflow.lib.types import Phase, BUILTIN_PHASES

logger = logging.getLogger(__name__)

PHASES_FILENAME = "phases.yaml"

_CLAUDE = "claude -p --dangerously-skip-permissions {accelerators}"

# Ordered by workflow sequence. The merge phase runs in-process and has no command.
DEFAULT_PHASE_COMMANDS = {
    "plan": _CLAUDE + ' "/plan {issue}"',
    # Reads the issue, posts a plan comment with a Recommended Workflow block

    "security-review": _CLAUDE + ' "/security-review {issue}"',

    "implement": _CLAUDE + ' "/implement {issue}"',
    # Writes code in {worktree}

    "verify": _CLAUDE + ' "/verify {issue}"',
    # Builds and runs the test suite

    "review": _CLAUDE + ' "/review {issue}"',
    # Must print a verdict line (READY_FOR_MERGE, AC_NOT_MET, ...)

    "loop": _CLAUDE + ' "/loop {issue}"',
    # Fixes review findings; findings arrive in PHASEFLOW_FINDINGS
}

# Variables split into arguments rather than quoted as one
SPLIT_VARIABLES = {"accelerators"}


@dataclass
class PhaseCommandsConfig:
    """Phase command templates from phases.yaml."""
    phases: dict[str, str] = field(default_factory=lambda: DEFAULT_PHASE_COMMANDS.copy())


def load_phase_commands(config_dir: Path | None) -> PhaseCommandsConfig:
    """Load phases.yaml and return PhaseCommandsConfig.

    If config_dir is None or the file doesn't exist, returns defaults.
    Unknown phase names in the file are ignored with a warning.
    """
    if config_dir is None:
        return PhaseCommandsConfig()

    config_path = config_dir / PHASES_FILENAME
    if not config_path.exists():
        return PhaseCommandsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return PhaseCommandsConfig()

    phases = DEFAULT_PHASE_COMMANDS.copy()
    overrides = (data or {}).get("phases") or {}
    if not isinstance(overrides, dict):
        logger.warning(f"{config_path}: 'phases' must be a mapping, ignoring")
        return PhaseCommandsConfig()

    for name, template in overrides.items():
        if name not in DEFAULT_PHASE_COMMANDS:
            logger.warning(f"{config_path}: unknown phase '{name}', ignoring")
            continue
        phases[name] = str(template)
    return PhaseCommandsConfig(phases=phases)


@dataclass
class PhaseCommand:
    """Result of building a phase command."""
    cmd: list[str]
    accelerators: bool  # False on the fallback attempt


def get_phase_command(
    config: PhaseCommandsConfig,
    phase: Phase,
    context: dict[str, str],
    accelerators: str = "",
) -> PhaseCommand:
    """Build the argv for a phase with variable substitution.

    Args:
        config: PhaseCommandsConfig instance
        phase: Phase to run (must not be a built-in phase)
        context: Variables for substitution (issue, worktree, phase)
        accelerators: Extra arguments for {accelerators}; "" disables them

    Raises:
        ValueError: If the phase has no command or the template is malformed.

    Example:
        >>> config = PhaseCommandsConfig(phases={"verify": "make test ISSUE={issue}"})
        >>> get_phase_command(config, Phase.VERIFY, {"issue": "12"}).cmd
        ['make', 'test', 'ISSUE=12']
    """
    if phase in BUILTIN_PHASES or phase.value not in config.phases:
        raise ValueError(f"No command configured for phase: {phase.value}")

    template = config.phases[phase.value]
    values = dict(context)
    values["accelerators"] = accelerators

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        value = str(values[name])
        if name in SPLIT_VARIABLES:
            return value
        return shlex.quote(value)

    rendered = re.sub(r'\{(\w+)\}', substitute, template)

    remaining_vars = re.findall(r'\{(\w+)\}', rendered)
    if remaining_vars:
        logger.error(
            f"Phase '{phase.value}' has unsubstituted variables: {remaining_vars}. "
            f"Template: {template}"
        )

    try:
        cmd = shlex.split(rendered)
    except ValueError as e:
        raise ValueError(f"Malformed command template for phase {phase.value}: {e}") from None
    if not cmd:
        raise ValueError(f"Empty command template for phase {phase.value}")

    return PhaseCommand(cmd=cmd, accelerators=bool(accelerators))


def missing_binaries(config: PhaseCommandsConfig, phases: list[Phase]) -> dict[str, list[str]]:
    """Map each binary not found on PATH to the phases that need it."""
    missing: dict[str, list[str]] = {}
    for phase in phases:
        template = config.phases.get(phase.value)
        if not template:
            continue
        parts = shlex.split(template.replace("{accelerators}", ""))
        if parts and shutil.which(parts[0]) is None:
            missing.setdefault(parts[0], []).append(phase.value)
    return missing
