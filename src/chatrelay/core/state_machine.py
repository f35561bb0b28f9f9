from __future__ import annotations

from typing import Dict, FrozenSet, List

# Stream status transitions. Terminal states have no outgoing edges.
STREAM_TRANSITIONS: Dict[str, List[str]] = {
    "streaming": ["paused", "completed", "cancelled"],
    "paused": ["resumed", "cancelled"],
    "resumed": ["streaming", "completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}

INITIAL_STATUS = "streaming"
TERMINAL_STATUSES: FrozenSet[str] = frozenset(s for s, targets in STREAM_TRANSITIONS.items() if not targets)


def is_valid_transition(current: str, target: str) -> bool:
    return target in STREAM_TRANSITIONS.get(current, [])


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def sources_for(target: str) -> List[str]:
    """Statuses from which ``target`` may be entered, in table order."""
    return [source for source, targets in STREAM_TRANSITIONS.items() if target in targets]
