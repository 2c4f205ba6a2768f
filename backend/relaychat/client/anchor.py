"""Scroll anchoring across history prepends.

The store computes a hint from its pre-merge contents; the UI applies it by
implementing ScrollAnchorController.
"""
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from relaychat.protocol import Message


@dataclass(frozen=True)
class ScrollAnchorHint:
    """Keep ``anchor_message_id`` at ``offset_px`` from the viewport top."""
    anchor_message_id: str
    offset_px: float = 0.0


class ScrollAnchorController(Protocol):
    def pin(self, anchor_message_id: str, offset_px: float) -> None: ...


def compute_anchor(
    before_merge: Sequence[Message],
    top_visible_id: Optional[str] = None,
    offset_px: Optional[float] = None,
) -> Optional[ScrollAnchorHint]:
    """Pick the element that must stay put while older messages are inserted.

    Uses ``top_visible_id`` when it is part of the pre-merge snapshot,
    otherwise the first message. Returns None for an empty snapshot.
    """
    if not before_merge:
        return None
    anchor_id = before_merge[0].id
    if top_visible_id is not None and any(m.id == top_visible_id for m in before_merge):
        anchor_id = top_visible_id
    return ScrollAnchorHint(anchor_message_id=anchor_id, offset_px=offset_px or 0.0)
