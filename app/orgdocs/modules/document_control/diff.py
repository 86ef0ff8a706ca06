from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ContentDiff:
    additions: list[dict[str, Any]] = field(default_factory=list)
    deletions: list[dict[str, Any]] = field(default_factory=list)
    modifications: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.additions or self.deletions or self.modifications)

    def as_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "additions": self.additions,
            "deletions": self.deletions,
            "modifications": self.modifications,
        }


def positional_line_diff(old_content: str, new_content: str) -> ContentDiff:
    """
    Index-aligned line diff (NOT a longest-common-subsequence diff).

    Line i of `old_content` is compared with line i of `new_content`. Lines past
    the end of the old text are additions, lines past the end of the new text are
    deletions, and differing lines at the same index are modifications. A single
    inserted line therefore reports every following line as modified. Line
    numbers are 1-based.
    """
    old_lines = old_content.split("\n")
    new_lines = new_content.split("\n")
    diff = ContentDiff()

    for i in range(max(len(old_lines), len(new_lines))):
        line_no = i + 1
        old_line = old_lines[i] if i < len(old_lines) else None
        new_line = new_lines[i] if i < len(new_lines) else None

        if old_line is None:
            diff.additions.append({"line": line_no, "text": new_line})
        elif new_line is None:
            diff.deletions.append({"line": line_no, "text": old_line})
        elif old_line != new_line:
            diff.modifications.append({"line": line_no, "old": old_line, "new": new_line})

    return diff
