"""
Safe .env file parser for phaseflow settings.

Parses KEY=value files without shell execution and rejects values that look
like shell injection. Typed accessors convert the raw strings.
"""

import re
from pathlib import Path

FORBIDDEN_PATTERNS = [
    r'`',           # backticks
    r'\$\(',        # command substitution
    r'\$\{',        # variable expansion
    r';',           # command chaining
    r'&&',          # AND chaining
    r'\|',          # pipe (covers ||)
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def load_env(filepath: Path, missing_ok: bool = False) -> dict[str, str]:
    """
    Parse env file safely, return dict.

    Raises:
        FileNotFoundError: if file doesn't exist and missing_ok is False
        ValueError: if syntax invalid or forbidden pattern found
    """
    path = Path(filepath)
    if not path.exists():
        if missing_ok:
            return {}
        raise FileNotFoundError(f"Env file not found: {filepath}")

    result = {}
    for lineno, line in enumerate(path.read_text().splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue

        if line.startswith("export "):
            line = line[len("export "):].lstrip()

        if '=' not in line:
            raise ValueError(f"{path.name} line {lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if not KEY_PATTERN.match(key):
            raise ValueError(f"{path.name} line {lineno}: Invalid key '{key}'")

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]

        for pattern in FORBIDDEN_PATTERNS:
            if re.search(pattern, value):
                raise ValueError(f"{path.name} line {lineno}: Forbidden pattern in value of {key}")

        result[key] = value

    return result


def get_int(env: dict[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got '{raw}'") from None


def get_bool(env: dict[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean, got '{raw}'")


def get_list(env: dict[str, str], key: str, default: list[str]) -> list[str]:
    """Comma-separated list; blank entries are dropped."""
    raw = env.get(key)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]
