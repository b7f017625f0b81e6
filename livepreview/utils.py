"""
Utility functions for the live preview environment.
"""

import io
import re
import tarfile
import time
from pathlib import PurePosixPath
from typing import Dict


# Asset types that never make sense as text content in a snapshot
BINARY_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".webp", ".bmp", ".svgz",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp3", ".mp4", ".wav", ".ogg", ".webm", ".mov",
    ".zip", ".gz", ".tgz", ".tar", ".7z", ".rar",
    ".pdf", ".exe", ".dll", ".so", ".dylib", ".wasm", ".lockb",
})


def normalize_path(path: str) -> str:
    """
    Normalize a repository path to the canonical relative form.

    Backslashes become forward slashes, leading "./" and "/" are removed and
    duplicate separators are collapsed.

    Args:
        path: Path as given by a fetcher, edit log or UI

    Returns:
        Normalized relative POSIX path ("" for the root)
    """
    normalized = path.replace("\\", "/")
    normalized = re.sub(r"/{2,}", "/", normalized)
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.strip("/")


def is_binary_path(path: str) -> bool:
    """Return True if the path has a known binary asset extension."""
    return PurePosixPath(path).suffix.lower() in BINARY_EXTENSIONS


def make_tar_bytes(files: Dict[str, str]) -> bytes:
    """
    Create an in-memory tar archive from a dictionary of files.

    The archive is what the Docker SDK expects for ``put_archive``.

    Args:
        files: Dictionary mapping file paths to file contents

    Returns:
        Bytes of the tar archive
    """
    buffer = io.BytesIO()
    now = int(time.time())

    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for path, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name=normalize_path(path))
            info.size = len(data)
            info.mtime = now
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))

    buffer.seek(0)
    return buffer.getvalue()


def safe_container_name(view_id: str, prefix: str = "livepreview") -> str:
    """
    Generate a Docker-safe container name from a view id.

    Args:
        view_id: Identifier of the view that owns the container

    Returns:
        A name matching Docker's ``[a-zA-Z0-9][a-zA-Z0-9_.-]*`` rule
    """
    # Take first 40 characters
    name = view_id[:40].strip()

    # Replace anything Docker rejects with hyphens
    name = re.sub(r"[^a-zA-Z0-9_.-]+", "-", name)

    # Remove leading/trailing separators
    name = name.strip("-_.")

    # Default if empty
    if not name:
        name = "view"

    return f"{prefix}-{name.lower()}"
