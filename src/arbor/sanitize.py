"""Branch name to filesystem segment conversion."""

import re
from typing import Final

SUBSTITUTE: Final[str] = "-"

# Path separators and characters rejected by common filesystems, plus control chars
_UNSAFE_RUN: Final[re.Pattern[str]] = re.compile(r'[/\\:*?"<>|\x00-\x1f]+')
_SUBSTITUTE_RUN: Final[re.Pattern[str]] = re.compile(rf"{re.escape(SUBSTITUTE)}{{2,}}")


def sanitize(canonical_name: str) -> str:  # Time: O(n), Space: O(n)
    """Map a branch name to a single path segment.

    Pure and deterministic. Runs of unsafe characters become one ``-`` and
    repeated substitutes collapse, so ``feature//x`` and ``feature/x`` agree.
    Leading dots are replaced so the result is never hidden and never
    ``.`` or ``..``. Collisions are resolved by the branch index, not here.

    Examples:
        sanitize("feature/auth") -> "feature-auth"
        sanitize("fix:bug*1") -> "fix-bug-1"
    """
    if not canonical_name:
        raise ValueError("Branch name cannot be empty")

    result = _UNSAFE_RUN.sub(SUBSTITUTE, canonical_name)
    result = _SUBSTITUTE_RUN.sub(SUBSTITUTE, result)
    if result.startswith("."):
        result = SUBSTITUTE + result.lstrip(".")
        result = _SUBSTITUTE_RUN.sub(SUBSTITUTE, result)
    return result or SUBSTITUTE
