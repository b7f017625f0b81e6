"""
Immutable file tree snapshots.

A FileNode is exactly one of:
- a file carrying text ``content``
- a directory carrying named ``children``

Trees are never mutated in place; every transformation returns a new tree.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Tuple

from livepreview.utils import normalize_path


@dataclass(frozen=True)
class FileNode:
    """A node in a repository snapshot."""
    content: Optional[str] = None
    children: Optional[Mapping[str, "FileNode"]] = None

    def __post_init__(self):
        if (self.content is None) == (self.children is None):
            raise ValueError("FileNode must be exactly one of file (content) or directory (children)")
        if self.children is not None and not isinstance(self.children, MappingProxyType):
            object.__setattr__(self, "children", MappingProxyType(dict(self.children)))

    @classmethod
    def file(cls, content: str) -> "FileNode":
        return cls(content=content)

    @classmethod
    def directory(cls, children: Optional[Mapping[str, "FileNode"]] = None) -> "FileNode":
        return cls(children=dict(children or {}))

    @property
    def is_file(self) -> bool:
        return self.content is not None

    @property
    def is_directory(self) -> bool:
        return self.children is not None

    def __eq__(self, other):
        if not isinstance(other, FileNode):
            return NotImplemented
        if self.is_file or other.is_file:
            return self.content == other.content and self.is_file == other.is_file
        return dict(self.children) == dict(other.children)

    def __hash__(self):
        if self.is_file:
            return hash(("file", self.content))
        return hash(("dir", tuple(sorted(self.children))))

    def to_dict(self) -> Dict:
        """Convert to the nested dictionary shape used by sandbox mounts."""
        if self.is_file:
            return {"file": {"contents": self.content}}
        return {"directory": {name: child.to_dict() for name, child in self.children.items()}}


# The root of a snapshot is always a directory node
FileTree = FileNode


def empty_tree() -> FileTree:
    return FileNode.directory()


def tree_from_files(files: Mapping[str, str]) -> FileTree:
    """
    Build a tree from a flat ``{path: content}`` mapping.

    Args:
        files: Mapping of relative file paths to text content

    Returns:
        Root directory node

    Raises:
        ValueError: If a path is used both as a file and as a directory
    """
    root: Dict = {}
    for raw_path, content in files.items():
        path = normalize_path(raw_path)
        if not path:
            raise ValueError(f"Invalid file path: {raw_path!r}")
        *parents, name = path.split("/")
        level = root
        for part in parents:
            level = level.setdefault(part, {})
            if not isinstance(level, dict):
                raise ValueError(f"Path conflicts with a file: {path}")
        if isinstance(level.get(name), dict):
            raise ValueError(f"Path conflicts with a directory: {path}")
        level[name] = content

    def build(level: Dict) -> FileNode:
        return FileNode.directory({
            name: build(value) if isinstance(value, dict) else FileNode.file(value)
            for name, value in level.items()
        })

    return build(root)


def iter_files(tree: FileTree, prefix: str = "") -> Iterator[Tuple[str, str]]:
    """Yield ``(path, content)`` for every file in the tree, depth first."""
    if tree.is_file:
        yield prefix, tree.content
        return
    for name, child in tree.children.items():
        child_path = f"{prefix}/{name}" if prefix else name
        yield from iter_files(child, child_path)


def flatten(tree: FileTree) -> Dict[str, str]:
    """Flatten a tree back to a ``{path: content}`` mapping."""
    return dict(iter_files(tree))


def get_node(tree: FileTree, path: str) -> Optional[FileNode]:
    node = tree
    normalized = normalize_path(path)
    if not normalized:
        return tree
    for part in normalized.split("/"):
        if not node.is_directory or part not in node.children:
            return None
        node = node.children[part]
    return node


def get_file(tree: FileTree, path: str) -> Optional[str]:
    """Return the content of the file at ``path``, or None if it is not a file."""
    node = get_node(tree, path)
    if node is None or not node.is_file:
        return None
    return node.content


def has_file(tree: FileTree, path: str) -> bool:
    return get_file(tree, path) is not None


def count_files(tree: FileTree) -> int:
    return sum(1 for _ in iter_files(tree))
