"""
Configuration loaders for phaseflow.

Project settings live in <repo>/.phaseflow/settings.env (KEY=value, parsed by
envparse). Phase command templates live next to it in phases.yaml and are
loaded by lib.phase_commands. Every setting has a default, so a repository
without a .phaseflow directory works out of the box.
"""

from dataclasses import dataclass, field
from pathlib import Path

from . import envparse

CONFIG_DIRNAME = ".phaseflow"
SETTINGS_FILENAME = "settings.env"

DEFAULT_PHASE_TIMEOUT = 1800
DEFAULT_MAX_ITERATIONS = 3
DEFAULT_STALE_THRESHOLD = 5
DEFAULT_COLD_START_WINDOW = 60
DEFAULT_COLD_START_RETRIES = 2
DEFAULT_STORE_LOCK_TIMEOUT = 30


@dataclass
class Settings:
    """Project-level settings from .phaseflow/settings.env"""
    repo_root: Path
    default_branch: str = "main"
    remote: str = "origin"
    worktrees_dir: Path | None = None  # Defaults to <repo parent>/worktrees
    state_path: Path | None = None  # Defaults to <repo>/.phaseflow/state.json
    phase_timeout: int = DEFAULT_PHASE_TIMEOUT
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    stale_threshold: int = DEFAULT_STALE_THRESHOLD
    cold_start_window: int = DEFAULT_COLD_START_WINDOW
    cold_start_retries: int = DEFAULT_COLD_START_RETRIES
    store_lock_timeout: int = DEFAULT_STORE_LOCK_TIMEOUT
    protected_branches: list[str] = field(default_factory=list)
    accelerator_args: str = ""  # Substituted for {accelerators}; emptied on fallback
    notifications: bool = True

    def __post_init__(self):
        if self.worktrees_dir is None:
            self.worktrees_dir = self.repo_root.parent / "worktrees"
        if self.state_path is None:
            self.state_path = self.repo_root / CONFIG_DIRNAME / "state.json"
        if not self.protected_branches:
            self.protected_branches = [self.default_branch]

    @property
    def config_dir(self) -> Path:
        return self.repo_root / CONFIG_DIRNAME

    @property
    def remote_default(self) -> str:
        """Remote-tracking ref of the default branch, e.g. origin/main."""
        return f"{self.remote}/{self.default_branch}"


def _resolve(repo_root: Path, raw: str | None) -> Path | None:
    if not raw:
        return None
    path = Path(raw).expanduser()
    return path if path.is_absolute() else repo_root / path


def load_settings(repo_root: Path) -> Settings:
    """Load .phaseflow/settings.env and return Settings.

    Raises:
        ValueError: if the file has invalid syntax or a value of the wrong type
    """
    env = envparse.load_env(repo_root / CONFIG_DIRNAME / SETTINGS_FILENAME, missing_ok=True)
    default_branch = env.get("DEFAULT_BRANCH", "main")
    return Settings(
        repo_root=repo_root,
        default_branch=default_branch,
        remote=env.get("REMOTE", "origin"),
        worktrees_dir=_resolve(repo_root, env.get("WORKTREES_DIR")),
        state_path=_resolve(repo_root, env.get("STATE_PATH")),
        phase_timeout=envparse.get_int(env, "PHASE_TIMEOUT", DEFAULT_PHASE_TIMEOUT),
        max_iterations=envparse.get_int(env, "MAX_ITERATIONS", DEFAULT_MAX_ITERATIONS),
        stale_threshold=envparse.get_int(env, "STALE_THRESHOLD", DEFAULT_STALE_THRESHOLD),
        cold_start_window=envparse.get_int(env, "COLD_START_WINDOW", DEFAULT_COLD_START_WINDOW),
        cold_start_retries=envparse.get_int(env, "COLD_START_RETRIES", DEFAULT_COLD_START_RETRIES),
        store_lock_timeout=envparse.get_int(env, "STORE_LOCK_TIMEOUT", DEFAULT_STORE_LOCK_TIMEOUT),
        protected_branches=envparse.get_list(env, "PROTECTED_BRANCHES", [default_branch]),
        accelerator_args=env.get("ACCELERATOR_ARGS", ""),
        notifications=envparse.get_bool(env, "NOTIFICATIONS", True),
    )
