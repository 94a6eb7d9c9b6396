"""
Diff Generator Utility

Provides structural and textual diffs between configuration documents,
plus statistical summaries of the changes.
"""

import difflib
import json
from typing import Any

from ..core.documents import document_kind, documents_equal, OBJECT
from ..schemas.configuration import DiffEntry, DiffSummary, DiffType


class DiffGenerator:
    """
    Utility class for generating diffs between configuration documents.

    Structural diffs walk nested maps key by key; lists are compared as
    leaves. Unified diffs are computed over pretty-printed canonical JSON.
    """

    def generate_structural_diff(
        self,
        old_doc: Any,
        new_doc: Any,
        path: str = "",
    ) -> list[DiffEntry]:
        """
        Compare two documents and list every added, removed or modified path.

        Keys are visited in sorted order so the result is deterministic.
        Swapping the arguments swaps added/removed and old/new values.

        Args:
            old_doc: Original document
            new_doc: Modified document
            path: Dot-joined prefix for nested calls

        Returns:
            List of DiffEntry records
        """
        changes: list[DiffEntry] = []

        if not _is_map(old_doc) or not _is_map(new_doc):
            if not documents_equal(old_doc, new_doc):
                changes.append(
                    DiffEntry(
                        type=DiffType.MODIFIED,
                        path=path,
                        old_value=old_doc,
                        new_value=new_doc,
                    )
                )
            return changes

        for key in sorted(set(old_doc) | set(new_doc)):
            key_path = f"{path}.{key}" if path else key

            if key not in new_doc:
                changes.append(DiffEntry(type=DiffType.REMOVED, path=key_path, old_value=old_doc[key]))
            elif key not in old_doc:
                changes.append(DiffEntry(type=DiffType.ADDED, path=key_path, new_value=new_doc[key]))
            elif _is_map(old_doc[key]) and _is_map(new_doc[key]):
                changes.extend(self.generate_structural_diff(old_doc[key], new_doc[key], key_path))
            elif not documents_equal(old_doc[key], new_doc[key]):
                changes.append(
                    DiffEntry(
                        type=DiffType.MODIFIED,
                        path=key_path,
                        old_value=old_doc[key],
                        new_value=new_doc[key],
                    )
                )

        return changes

    def generate_unified_diff(
        self,
        old_doc: Any,
        new_doc: Any,
        old_name: str = "old",
        new_name: str = "new",
        context_lines: int = 3,
    ) -> str:
        """
        Generate a unified diff between the pretty canonical JSON of two documents.

        Args:
            old_doc: Original document
            new_doc: Modified document
            old_name: Name/label for old content
            new_name: Name/label for new content
            context_lines: Number of context lines to include

        Returns:
            Unified diff as string
        """
        old_lines = _pretty(old_doc).splitlines(keepends=True)
        new_lines = _pretty(new_doc).splitlines(keepends=True)

        diff = difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=old_name,
            tofile=new_name,
            n=context_lines,
        )

        return "".join(diff)

    def get_diff_summary(self, changes: list[DiffEntry]) -> DiffSummary:
        """Count structural changes by type."""
        added = sum(1 for c in changes if c.type is DiffType.ADDED)
        removed = sum(1 for c in changes if c.type is DiffType.REMOVED)
        modified = sum(1 for c in changes if c.type is DiffType.MODIFIED)
        return DiffSummary(added=added, removed=removed, modified=modified, total=len(changes))

    def get_text_statistics(self, diff_content: str) -> dict[str, Any]:
        """Analyze unified diff format for line statistics."""
        lines_added = 0
        lines_removed = 0
        total_lines = 0

        for line in diff_content.splitlines():
            if line.startswith("+") and not line.startswith("+++"):
                lines_added += 1
            elif line.startswith("-") and not line.startswith("---"):
                lines_removed += 1
            elif not line.startswith(("@@", "+++", "---")):
                total_lines += 1

        lines_modified = min(lines_added, lines_removed)
        lines_added -= lines_modified
        lines_removed -= lines_modified
        total_changes = lines_added + lines_removed + lines_modified

        return {
            "lines_added": lines_added,
            "lines_removed": lines_removed,
            "lines_modified": lines_modified,
            "total_changes": total_changes,
            "total_lines": total_lines,
        }


def _is_map(value: Any) -> bool:
    return document_kind(value) == OBJECT


def _pretty(doc: Any) -> str:
    return json.dumps(doc, sort_keys=True, indent=2, ensure_ascii=False) + "\n"
