"""Token-level text diff (Myers O(ND)) for handoff packet versions.

Text is split into words, punctuation marks, whitespace runs and newlines so
that diffs read naturally. Tokens always join back to the original text,
which is what makes ``apply_diff(old, diff(old, new)) == new`` hold.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from featureflow.models import Artifact, ArtifactDiff, DiffOp, HandoffPacket, PacketDiff

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\n|[^\S\n]+|\w+|[^\w\s]")


class DiffComputationError(Exception):
    """Raised when content cannot be diffed or a diff does not fit its base text."""


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text)


def _shortest_edit_trace(a: Sequence[str], b: Sequence[str]) -> list[list[int]]:
    """Run the forward Myers search, recording V before each round.

    Round d only reads diagonals -d-1..d+1, so only that window is kept.
    Entry k of round d lives at index ``k + d + 1`` of ``trace[d]``.
    """
    n, m = len(a), len(b)
    max_d = n + m
    offset = max_d + 1
    v = [0] * (2 * max_d + 3)
    trace: list[list[int]] = []

    for d in range(max_d + 1):
        trace.append(v[offset - d - 1 : offset + d + 2])
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and v[offset + k - 1] < v[offset + k + 1]):
                x = v[offset + k + 1]
            else:
                x = v[offset + k - 1] + 1
            y = x - k
            while x < n and y < m and a[x] == b[y]:
                x += 1
                y += 1
            v[offset + k] = x
            if x >= n and y >= m:
                return trace
    return trace


def _backtrack(
    a: Sequence[str], b: Sequence[str], trace: list[list[int]]
) -> list[tuple[str, str]]:
    x, y = len(a), len(b)
    edits: list[tuple[str, str]] = []

    for d in range(len(trace) - 1, -1, -1):
        v = trace[d]
        base = d + 1
        k = x - y
        if k == -d or (k != d and v[base + k - 1] < v[base + k + 1]):
            prev_k = k + 1
        else:
            prev_k = k - 1
        prev_x = v[base + prev_k]
        prev_y = prev_x - prev_k

        while x > prev_x and y > prev_y:
            edits.append(("equal", a[x - 1]))
            x -= 1
            y -= 1
        if d > 0:
            if x == prev_x:
                edits.append(("insert", b[y - 1]))
            else:
                edits.append(("delete", a[x - 1]))
        x, y = prev_x, prev_y

    edits.reverse()
    return edits


def _edit_script(a: Sequence[str], b: Sequence[str]) -> list[tuple[str, str]]:
    """Shortest edit script over tokens.

    Tokens that never occur on the other side cannot be matched, so the
    search runs on the rest and they are merged back as deletes and inserts.
    """
    in_a, in_b = set(a), set(b)
    keep_a = [i for i, token in enumerate(a) if token in in_b]
    keep_b = [j for j, token in enumerate(b) if token in in_a]
    kept_a = [a[i] for i in keep_a]
    kept_b = [b[j] for j in keep_b]

    edits: list[tuple[str, str]] = []
    i = j = 0
    fi = fj = 0
    for op, _ in _backtrack(kept_a, kept_b, _shortest_edit_trace(kept_a, kept_b)):
        stop_a = keep_a[fi] if op != "insert" else i
        stop_b = keep_b[fj] if op != "delete" else j
        edits.extend(("delete", t) for t in a[i:stop_a])
        edits.extend(("insert", t) for t in b[j:stop_b])
        if op == "equal":
            edits.append(("equal", a[stop_a]))
        elif op == "delete":
            edits.append(("delete", a[stop_a]))
        else:
            edits.append(("insert", b[stop_b]))
        if op != "insert":
            i = stop_a + 1
            fi += 1
        if op != "delete":
            j = stop_b + 1
            fj += 1
    edits.extend(("delete", t) for t in a[i:])
    edits.extend(("insert", t) for t in b[j:])
    return edits


def _coalesce(edits: list[tuple[str, str]]) -> list[DiffOp]:
    """Merge runs into ops; inside a changed block deletes come before inserts."""
    ops: list[DiffOp] = []
    deleted: list[str] = []
    inserted: list[str] = []

    def flush_changes() -> None:
        if deleted:
            ops.append(DiffOp(op="delete", text="".join(deleted)))
            deleted.clear()
        if inserted:
            ops.append(DiffOp(op="insert", text="".join(inserted)))
            inserted.clear()

    for op, token in edits:
        if op == "delete":
            deleted.append(token)
        elif op == "insert":
            inserted.append(token)
        else:
            flush_changes()
            if ops and ops[-1].op == "equal":
                ops[-1] = DiffOp(op="equal", text=ops[-1].text + token)
            else:
                ops.append(DiffOp(op="equal", text=token))
    flush_changes()
    return ops


def diff(old_text: str, new_text: str) -> list[DiffOp]:
    """Shortest edit script turning *old_text* into *new_text*."""
    if not isinstance(old_text, str) or not isinstance(new_text, str):
        msg = f"Cannot diff non-text content ({type(old_text).__name__}, {type(new_text).__name__})"
        raise DiffComputationError(msg)

    if old_text == new_text:
        return [DiffOp(op="equal", text=old_text)]
    if not old_text:
        return [DiffOp(op="insert", text=new_text)]
    if not new_text:
        return [DiffOp(op="delete", text=old_text)]

    a = tokenize(old_text)
    b = tokenize(new_text)

    prefix = 0
    while prefix < len(a) and prefix < len(b) and a[prefix] == b[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < len(a) - prefix
        and suffix < len(b) - prefix
        and a[len(a) - 1 - suffix] == b[len(b) - 1 - suffix]
    ):
        suffix += 1

    mid_a = a[prefix:len(a) - suffix]
    mid_b = b[prefix:len(b) - suffix]

    edits: list[tuple[str, str]] = [("equal", t) for t in a[:prefix]]
    edits.extend(_edit_script(mid_a, mid_b))
    edits.extend(("equal", t) for t in a[len(a) - suffix:])
    return _coalesce(edits)


def apply_diff(old_text: str, ops: Sequence[DiffOp]) -> str:
    """Replay *ops* on *old_text*. Raises DiffComputationError on mismatch."""
    pos = 0
    out: list[str] = []
    for op in ops:
        if op.op == "insert":
            out.append(op.text)
            continue
        if not old_text.startswith(op.text, pos):
            msg = f"{op.op} op does not match base text at offset {pos}"
            raise DiffComputationError(msg)
        pos += len(op.text)
        if op.op == "equal":
            out.append(op.text)
    if pos != len(old_text):
        msg = f"Diff consumed {pos} of {len(old_text)} characters"
        raise DiffComputationError(msg)
    return "".join(out)


def _artifact_title(artifact: Artifact, index: int) -> str:
    return artifact.title or f"Artifact {index + 1}"


def _as_text(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    msg = f"Artifact content is {type(content).__name__}, not text"
    raise DiffComputationError(msg)


def _content_diff(old: object, new: object) -> list[DiffOp] | None:
    if old in (None, "") and new in (None, ""):
        return None
    try:
        return diff(_as_text(old), _as_text(new))
    except DiffComputationError as exc:
        logger.warning("Skipping artifact content diff: %s", exc)
        return None


def diff_artifacts(
    previous: Sequence[Artifact], current: Sequence[Artifact]
) -> list[ArtifactDiff]:
    """Diff artifact contents, pairing artifacts by title.

    Artifacts that disappeared are reported with a pure-delete diff. Content
    that is missing on both sides, or is not text, gets ``content_diff=None``.
    """
    remaining = [(_artifact_title(a, i), a) for i, a in enumerate(previous)]
    results: list[ArtifactDiff] = []

    for i, artifact in enumerate(current):
        title = _artifact_title(artifact, i)
        match = next((j for j, (t, _) in enumerate(remaining) if t == title), None)
        old_content = remaining.pop(match)[1].content if match is not None else None
        results.append(
            ArtifactDiff(title=title, content_diff=_content_diff(old_content, artifact.content))
        )

    for title, artifact in remaining:
        results.append(
            ArtifactDiff(title=title, content_diff=_content_diff(artifact.content, None))
        )
    return results


def diff_packets(previous: HandoffPacket, current: HandoffPacket) -> PacketDiff:
    return PacketDiff(
        summary=diff(previous.output_summary or "", current.output_summary or ""),
        artifacts=diff_artifacts(previous.output_artifacts, current.output_artifacts),
    )
