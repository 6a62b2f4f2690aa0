"""Collision-free hostname allocation for new nodes.

Adding one node with an unused hostname keeps the hostname verbatim.
Anything else gets numbered suffixes that continue past the highest suffix
already taken::

    allocate_node_names({"w-1", "w-3"}, "w", 2)  ->  ["w-4", "w-5"]

Gaps left by removed nodes are never reused, so a name never refers to two
different machines over the lifetime of a cluster.
"""

from __future__ import annotations

from typing import Iterable, List


def _numeric_suffix(name: str, base_name: str) -> int:
    """Return the positive integer suffix of ``<base_name>-<n>``, or 0."""
    prefix = base_name + "-"
    if not name.startswith(prefix):
        return 0
    suffix = name[len(prefix):]
    # Only canonical positive integers count: no sign, no leading zero
    if not suffix.isdigit() or not suffix.isascii() or suffix.startswith("0"):
        return 0
    return int(suffix)


def max_suffix(existing_names: Iterable[str], base_name: str) -> int:
    """Largest ``n`` among names of the form ``<base_name>-<n>`` (0 if none)."""
    return max(
        (_numeric_suffix(name, base_name) for name in existing_names),
        default=0,
    )


def allocate_node_names(
    existing_names: Iterable[str],
    base_name: str,
    count: int,
) -> List[str]:
    """Return *count* hostnames that do not collide with *existing_names*.

    A *count* below 1 returns an empty list.  Matching is case-sensitive and
    on the exact ``<base_name>-`` prefix.
    """
    if count < 1:
        return []

    taken = set(existing_names)
    if count == 1 and base_name not in taken:
        return [base_name]

    start = max_suffix(taken, base_name)
    return [f"{base_name}-{start + i}" for i in range(1, count + 1)]
