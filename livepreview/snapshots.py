"""
Repository snapshot fetchers.

This module handles:
- Fetching a branch of a GitHub repository through the REST API (httpx)
- Reading a local checkout from disk
- Skipping dependency folders, build output, lockfiles and oversized files

Fetch failures raise SnapshotFetchError with the remote message; callers
surface it verbatim and never retry.
"""

import asyncio
import base64
import binascii
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable
from urllib.parse import quote

import httpx

from livepreview.config import Config, get_config
from livepreview.errors import SnapshotFetchError
from livepreview.filetree import FileTree, tree_from_files

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

SKIP_PATTERNS = (
    re.compile(r"^node_modules/"),
    re.compile(r"^\.git/"),
    re.compile(r"^dist/"),
    re.compile(r"^build/"),
    re.compile(r"^\.next/"),
    re.compile(r"\.lock$"),
    re.compile(r"package-lock\.json$"),
)

BATCH_SIZE = 20
DEFAULT_TIMEOUT = 30.0


def should_skip(path: str, size: Optional[int] = None, max_size: int = 100_000) -> bool:
    """Return True for paths the preview never needs."""
    if any(pattern.search(path) for pattern in SKIP_PATTERNS):
        return True
    if size and size > max_size:
        return True
    return False


@runtime_checkable
class SnapshotFetcher(Protocol):
    """Collaborator returning the file tree of a repository branch."""

    async def fetch(self, repo_id: str, branch: Optional[str]) -> FileTree:
        ...


# =============================================================================
# GITHUB
# =============================================================================

class GitHubSnapshotFetcher:
    """
    Fetch a branch snapshot through the GitHub REST API.

    The recursive git tree lists every blob; contents are then fetched in
    parallel batches and base64-decoded. Individual files that fail or are not
    valid UTF-8 are skipped.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        config: Optional[Config] = None,
        client: Optional[httpx.AsyncClient] = None,
        batch_size: int = BATCH_SIZE,
    ):
        self.config = config or get_config()
        self._token = token or self.config.github_token
        self._client = client
        self.batch_size = batch_size

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "livepreview",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _get(self, client: httpx.AsyncClient, path: str, params: Optional[Dict] = None) -> Dict:
        try:
            response = await client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise SnapshotFetchError(f"GitHub request failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except ValueError:
                message = response.text
            if response.status_code == 404:
                message = f"Repository or branch not found: {message}"
            raise SnapshotFetchError(
                f"GitHub API error {response.status_code}: {message}",
                status_code=response.status_code,
            )
        return response.json()

    async def default_branch(self, client: httpx.AsyncClient, repo_id: str) -> str:
        data = await self._get(client, f"/repos/{repo_id}")
        return data.get("default_branch") or "main"

    async def _fetch_file(
        self, client: httpx.AsyncClient, repo_id: str, ref: str, path: str
    ) -> Optional[Tuple[str, str]]:
        try:
            data = await self._get(client, f"/repos/{repo_id}/contents/{quote(path)}", params={"ref": ref})
        except SnapshotFetchError as exc:
            logger.warning("skipping file", extra={"data": {"path": path, "error": str(exc)}})
            return None
        if not isinstance(data, dict) or data.get("encoding") != "base64":
            return None
        try:
            content = base64.b64decode(data.get("content", "")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        return path, content

    async def fetch(self, repo_id: str, branch: Optional[str]) -> FileTree:
        """
        Fetch the tree of ``repo_id`` ("owner/name") at ``branch``.

        Args:
            repo_id: Repository in owner/name form
            branch: Branch or ref; the default branch when None

        Returns:
            Root of the snapshot

        Raises:
            SnapshotFetchError: On network, auth or not-found failures
        """
        if self._client is not None:
            return await self._fetch(self._client, repo_id, branch)
        async with httpx.AsyncClient(
            base_url=self.config.github_api_url,
            headers=self._headers(),
            timeout=DEFAULT_TIMEOUT,
        ) as client:
            return await self._fetch(client, repo_id, branch)

    async def _fetch(self, client: httpx.AsyncClient, repo_id: str, branch: Optional[str]) -> FileTree:
        ref = branch or await self.default_branch(client, repo_id)
        tree_data = await self._get(client, f"/repos/{repo_id}/git/trees/{ref}", params={"recursive": "1"})

        paths: List[str] = [
            item["path"]
            for item in tree_data.get("tree", [])
            if item.get("type") == "blob"
            and item.get("path")
            and not should_skip(item["path"], item.get("size"), self.config.max_file_bytes)
        ]
        if tree_data.get("truncated"):
            logger.warning("git tree listing truncated", extra={"data": {"repo": repo_id, "ref": ref}})

        contents: Dict[str, str] = {}
        for start in range(0, len(paths), self.batch_size):
            batch = paths[start:start + self.batch_size]
            results = await asyncio.gather(*(self._fetch_file(client, repo_id, ref, p) for p in batch))
            contents.update(result for result in results if result is not None)

        logger.info(
            "fetched snapshot",
            extra={"data": {"repo": repo_id, "ref": ref, "listed": len(paths), "fetched": len(contents)}},
        )
        return tree_from_files(contents)


# =============================================================================
# LOCAL DIRECTORY
# =============================================================================

class LocalSnapshotFetcher:
    """
    Read a snapshot from a local directory.

    ``repo_id`` is resolved relative to ``root``; the branch is ignored because
    a working copy only has one checked-out state.
    """

    def __init__(self, root: Optional[Path] = None, config: Optional[Config] = None):
        self.root = Path(root) if root else Path.cwd()
        self.config = config or get_config()

    def _read(self, repo_id: str) -> Dict[str, str]:
        base = (self.root / repo_id).resolve()
        if not base.is_dir():
            raise SnapshotFetchError(f"Repository not found: {base}")

        files: Dict[str, str] = {}
        for dirpath, dirnames, filenames in os.walk(base):
            rel_dir = Path(dirpath).relative_to(base).as_posix()
            # Prune skipped directories before descending
            dirnames[:] = [
                d for d in sorted(dirnames)
                if not should_skip(f"{d}/" if rel_dir == "." else f"{rel_dir}/{d}/")
            ]
            for name in sorted(filenames):
                full = Path(dirpath) / name
                rel = full.relative_to(base).as_posix()
                if full.is_symlink():
                    continue
                if should_skip(rel, full.stat().st_size, self.config.max_file_bytes):
                    continue
                try:
                    files[rel] = full.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue
        return files

    async def fetch(self, repo_id: str, branch: Optional[str]) -> FileTree:
        files = await asyncio.to_thread(self._read, repo_id)
        logger.info("read local snapshot", extra={"data": {"repo": repo_id, "files": len(files)}})
        return tree_from_files(files)
