"""
File overlay reconciliation.

Pending edits take precedence over a freshly fetched baseline: their paths
are pruned from the baseline tree before it is mounted, and their content is
written over the pruned tree afterwards.
"""

import logging
from typing import AbstractSet, Dict, Iterable, Mapping, Set

from livepreview.filetree import FileNode, FileTree
from livepreview.schemas import PendingEdit
from livepreview.utils import normalize_path

logger = logging.getLogger(__name__)


def exclusion_set(edits: Iterable[PendingEdit]) -> Set[str]:
    """Paths owned by non-reverted edits."""
    return {normalize_path(edit.path) for edit in edits if not edit.reverted}


def reconcile(tree: FileTree, exclusions: AbstractSet[str]) -> FileTree:
    """
    Return a copy of ``tree`` without the excluded paths.

    File entries that exactly match an exclusion are dropped. For each
    directory the exclusions are re-scoped to paths below it; the directory is
    kept if it still has children or if no exclusion reached into it.

    Args:
        tree: Root directory of the baseline snapshot
        exclusions: Normalized relative paths to remove

    Returns:
        New pruned tree; the input is never modified
    """
    kept: Dict[str, FileNode] = {}

    for name, node in tree.children.items():
        if node.is_file:
            if name not in exclusions:
                kept[name] = node
            continue

        prefix = name + "/"
        child_paths = {path[len(prefix):] for path in exclusions if path.startswith(prefix)}
        if not child_paths:
            kept[name] = node
            continue

        pruned = reconcile(node, child_paths)
        if pruned.children:
            kept[name] = pruned

    return FileNode.directory(kept)


def latest_edits(edits: Iterable[PendingEdit]) -> Dict[str, str]:
    """
    Collapse an ordered edit log into the final content per path.

    Later edits win; reverted edits are ignored.
    """
    contents: Dict[str, str] = {}
    for edit in edits:
        if edit.reverted:
            continue
        contents[normalize_path(edit.path)] = edit.content
    return contents


async def apply_edits(sandbox, edits: Iterable[PendingEdit]) -> int:
    """
    Write edited content into a mounted sandbox.

    Args:
        sandbox: Sandbox exposing ``write_file(path, content)``
        edits: Ordered pending edits for the session

    Returns:
        Number of files written
    """
    contents = latest_edits(edits)
    for path, content in contents.items():
        await sandbox.write_file(path, content)
    if contents:
        logger.debug("applied pending edits", extra={"data": {"count": len(contents)}})
    return len(contents)


def overlay_files(files: Mapping[str, str], edits: Iterable[PendingEdit]) -> Dict[str, str]:
    """Flat-map variant used by the secondary bundler: edit content replaces baseline content."""
    merged = {normalize_path(path): content for path, content in files.items()}
    merged.update(latest_edits(edits))
    return merged
