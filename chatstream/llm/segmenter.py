"""
Split raw stream text into JSON fragments.

A streamed body looks like::

    data: {json}\\n\\ndata: {json}\\n\\ndata: [DONE]\\n\\n

Splitting on the ``data: `` prefix yields one fragment per event.  The
terminating ``[DONE]`` frame is not JSON and is dropped.  A body with no
prefix at all is a plain (non-streamed) response and comes back whole.
"""

from __future__ import annotations

DATA_PREFIX = "data: "
DONE_SENTINEL = "[done]"


def split_deltas(content: str) -> list[str]:
    """Return the fragments in *content*.  Never empty."""
    deltas = [piece for piece in content.split(DATA_PREFIX) if piece]

    if deltas and DONE_SENTINEL in deltas[-1].lower():
        deltas.pop()

    if not deltas:
        deltas.append(content)

    return deltas


def is_done_frame(fragment: str) -> bool:
    """True for a bare sentinel frame such as ``data: [DONE]``."""
    text = fragment.strip()
    if text.startswith("data:"):
        text = text[len("data:"):].strip()
    return text.lower() == DONE_SENTINEL
