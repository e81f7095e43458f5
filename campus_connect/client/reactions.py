"""Reaction aggregation and toggle planning."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..shared.schemas import Reaction


@dataclass
class ReactionCount:
    emoji: str
    count: int = 0
    user_reacted: bool = False
    user_ids: List[str] = field(default_factory=list)


class ReactionAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


def aggregate(reactions: Iterable[Reaction], me: str) -> List[ReactionCount]:
    """Group reactions by emoji, in the order each emoji was first seen."""
    grouped: Dict[str, ReactionCount] = {}
    for reaction in reactions:
        entry = grouped.setdefault(reaction.emoji, ReactionCount(emoji=reaction.emoji))
        entry.count += 1
        entry.user_ids.append(reaction.user_id)
        entry.user_reacted = entry.user_reacted or reaction.user_id == me
    return list(grouped.values())


def plan_toggle(existing: Optional[Reaction], emoji: str) -> ReactionAction:
    """One reaction per user per message: same emoji removes it, another replaces it."""
    if existing is None:
        return ReactionAction.INSERT
    if existing.emoji == emoji:
        return ReactionAction.DELETE
    return ReactionAction.UPDATE
