"""
Desktop notifications for phaseflow.

Uses notify-send (freedesktop compliant). Missing notify-send or a failing
daemon never affects a run.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)

APP_NAME = "phaseflow"
VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200


def notify(title: str, message: str, urgency: str = "normal") -> None:
    """
    Send a desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    try:
        result = subprocess.run(
            ["notify-send", "--urgency", urgency, "--app-name", APP_NAME, title, message],
            capture_output=True, text=True, timeout=5,
        )
        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def _truncate(text: str) -> str:
    if len(text) > MAX_NOTIFICATION_LENGTH:
        return text[:MAX_NOTIFICATION_LENGTH] + "..."
    return text


def notify_blocked(issue: int, reason: str) -> None:
    """The quality loop gave up on an issue."""
    notify(f"phaseflow: #{issue}", f"Blocked: {_truncate(reason)}", "critical")


def notify_ready(issue: int, pr_url: str | None = None) -> None:
    """An issue passed review and is ready for merge."""
    message = f"Ready for merge: {pr_url}" if pr_url else "Ready for merge"
    notify(f"phaseflow: #{issue}", message, "low")


def notify_failed(issue: int, phase: str) -> None:
    notify(f"phaseflow: #{issue}", f"Failed at {phase}", "critical")


def notify_review_gate(issue: int) -> None:
    """A chain paused at the review gate and needs a human."""
    notify(f"phaseflow: #{issue}", "Chain paused at review gate", "normal")
