"""Selection of the next work item to process.

Candidates come from a ``WorkCatalog`` in catalog-declared order. The first
candidate that is not completed, not already waiting in the pending queue
(concurrent mode) and matches the operator's patterns wins. Selection is a
pure function of its inputs, so calling it twice on the same state returns
the same item.
"""

import re
from collections.abc import Iterable, Sequence

import structlog

from epic_autopilot.engine.types import OrchestratorState
from epic_autopilot.exceptions import ConfigurationError

log = structlog.get_logger(__name__)


def split_patterns(raw: Iterable[str]) -> list[str]:
    """Flatten CLI arguments into individual patterns.

    Each argument may itself hold several whitespace-separated patterns
    (``"7A 8A"``).
    """
    patterns: list[str] = []
    for chunk in raw:
        patterns.extend(part for part in chunk.split() if part)
    return patterns


def compile_patterns(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    """Compile patterns case-insensitively.

    Raises:
        ConfigurationError: If a pattern is not a valid regular expression.
    """
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            raise ConfigurationError(f"Invalid item pattern {pattern!r}: {e}") from e
    return compiled


def matches_patterns(item_id: str, patterns: Sequence[str]) -> bool:
    """Check if an item matches any pattern. No patterns match everything."""
    if not patterns:
        return True
    return any(p.search(item_id) for p in compile_patterns(patterns))


def find_next(
    candidates: Sequence[str],
    state: OrchestratorState,
    patterns: Sequence[str] = (),
    concurrent: bool = False,
) -> str | None:
    """Pick the next item to work on.

    Args:
        candidates: Item ids in catalog order
        state: Current orchestrator state
        patterns: Case-insensitive regular expressions; an item is eligible
            if any of them matches. Empty means every item is eligible.
        concurrent: Also skip items waiting in the pending queue

    Returns:
        The first eligible item id, or None when nothing is left.
    """
    compiled = compile_patterns(patterns)
    completed = set(state.completed_items)
    pending = set(state.pending_ids) if concurrent else set()

    for item_id in candidates:
        if compiled and not any(p.search(item_id) for p in compiled):
            continue
        if item_id in completed:
            continue
        if item_id in pending:
            log.debug("item_skipped_pending", item=item_id)
            continue
        return item_id

    return None
