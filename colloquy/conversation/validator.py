"""Structural validation of a transmission view.

validate() never repairs anything: it raises StructuralError listing every
offending tool id and turn position so the caller can surface it.
"""

from __future__ import annotations

from colloquy.conversation.models import Turn
from colloquy.errors import StructuralError


def validate(turns: list[Turn]) -> None:
    """Raise StructuralError if the view would be rejected by the protocol.

    Checks, in order: non-empty view and turns, exact invocation/result
    pairing, pair roles and ordering, role alternation starting with user.
    """
    if not turns:
        raise StructuralError("Transmission view is empty")

    empty = [i for i, turn in enumerate(turns) if turn.is_empty]
    if empty:
        raise StructuralError(f"Turns with empty content at positions {empty}", positions=empty)

    invocation_at: dict[str, int] = {}
    result_at: dict[str, int] = {}
    duplicated: list[str] = []
    duplicate_positions: list[int] = []
    for i, turn in enumerate(turns):
        for block in turn.invocations:
            if block.id in invocation_at:
                duplicated.append(block.id)
                duplicate_positions.append(i)
            invocation_at.setdefault(block.id, i)
        for block in turn.results:
            if block.id in result_at:
                duplicated.append(block.id)
                duplicate_positions.append(i)
            result_at.setdefault(block.id, i)
    if duplicated:
        raise StructuralError(
            f"Tool ids used more than once: {duplicated}",
            positions=duplicate_positions,
            tool_ids=duplicated,
        )

    orphan_invocations = [tid for tid in invocation_at if tid not in result_at]
    orphan_results = [tid for tid in result_at if tid not in invocation_at]
    if orphan_invocations or orphan_results:
        problems = []
        if orphan_invocations:
            problems.append(f"tool invocations without result {orphan_invocations}")
        if orphan_results:
            problems.append(f"tool results without invocation {orphan_results}")
        positions = sorted(
            {invocation_at[t] for t in orphan_invocations} | {result_at[t] for t in orphan_results}
        )
        raise StructuralError(
            "Orphaned tool blocks: " + "; ".join(problems),
            positions=positions,
            tool_ids=orphan_invocations + orphan_results,
        )

    misplaced: list[str] = []
    misplaced_positions: set[int] = set()
    for tool_id, inv_pos in invocation_at.items():
        res_pos = result_at[tool_id]
        if turns[inv_pos].role != "assistant" or turns[res_pos].role != "user" or inv_pos >= res_pos:
            misplaced.append(tool_id)
            misplaced_positions.update((inv_pos, res_pos))
    if misplaced:
        raise StructuralError(
            f"Tool pairs with wrong roles or order: {misplaced}",
            positions=sorted(misplaced_positions),
            tool_ids=misplaced,
        )

    violations: list[int] = []
    if turns[0].role != "user":
        violations.append(0)
    for i in range(1, len(turns)):
        if turns[i].role == turns[i - 1].role:
            violations.append(i)
    if violations:
        raise StructuralError(
            f"Role alternation violated at positions {violations}",
            positions=violations,
        )
