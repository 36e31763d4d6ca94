"""Shared constants for phaseflow."""

# Exit codes
EXIT_SUCCESS = 0
EXIT_ISSUE_FAILED = 1  # At least one issue ended blocked, abandoned or failed
EXIT_CONFIG_ERROR = 2
EXIT_LOCK_TIMEOUT = 3
EXIT_INTERRUPTED = 130

# Tells phase commands they are being driven by phaseflow
ORCHESTRATOR_ID = "phaseflow-run"

# Environment variables passed into every phase invocation
ENV_ISSUE = "PHASEFLOW_ISSUE"
ENV_WORKTREE = "PHASEFLOW_WORKTREE"
ENV_PHASE = "PHASEFLOW_PHASE"
ENV_ORCHESTRATOR = "PHASEFLOW_ORCHESTRATOR"
ENV_ACCELERATORS = "PHASEFLOW_ACCELERATORS"
ENV_FINDINGS = "PHASEFLOW_FINDINGS"

# Prefix of the HTML comment that carries a phase marker
MARKER_PREFIX = "PHASEFLOW_PHASE"

# Phase output line that reports the agent session id
SESSION_ID_PREFIX = "PHASEFLOW_SESSION_ID="

STATE_VERSION = 1
