"""Issue dependency parsing and ordering for sequential runs."""

import logging
import re

logger = logging.getLogger(__name__)

BODY_DEPENDS_PATTERN = re.compile(r'depends\s+on\s*[:*]*\s*#?(\d+)', re.IGNORECASE)
LABEL_DEPENDS_PATTERN = re.compile(r'depends-on[-/](\d+)', re.IGNORECASE)


def parse_dependencies(body: str, labels: list[str]) -> list[int]:
    """Issue numbers this issue depends on, from "Depends on: #N" and depends-on-N labels."""
    found = []
    for match in BODY_DEPENDS_PATTERN.finditer(body or ""):
        found.append(int(match.group(1)))
    for label in labels:
        match = LABEL_DEPENDS_PATTERN.search(label)
        if match:
            found.append(int(match.group(1)))
    return list(dict.fromkeys(found))


def sort_by_dependencies(issues: list[int], depends_on: dict[int, list[int]]) -> list[int]:
    """
    Order issues so each comes after the issues it depends on.

    Only dependencies inside `issues` count. Issues involved in a cycle keep
    their input order and are appended at the end.
    """
    wanted = set(issues)
    deps = {n: [d for d in depends_on.get(n, []) if d in wanted and d != n] for n in issues}

    ordered: list[int] = []
    done: set[int] = set()
    progress = True
    while progress:
        progress = False
        for issue in issues:
            if issue in done:
                continue
            if all(d in done for d in deps[issue]):
                ordered.append(issue)
                done.add(issue)
                progress = True

    leftover = [n for n in issues if n not in done]
    if leftover:
        logger.warning(f"Circular dependencies among {', '.join(f'#{n}' for n in leftover)}; keeping input order")
        ordered.extend(leftover)
    return ordered
