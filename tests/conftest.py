"""Shared fakes and fixtures for the livepreview tests."""

import asyncio
import json
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from livepreview.config import Config
from livepreview.errors import SnapshotFetchError
from livepreview.filetree import FileTree, tree_from_files
from livepreview.sandbox.base import ServerReadyEvent


def manifest(dependencies=None, dev_dependencies=None, scripts=None) -> str:
    """Render a package.json body."""
    data = {}
    if dependencies is not None:
        data["dependencies"] = dependencies
    if dev_dependencies is not None:
        data["devDependencies"] = dev_dependencies
    if scripts is not None:
        data["scripts"] = scripts
    return json.dumps(data)


def make_tree(files: Dict[str, str]) -> FileTree:
    return tree_from_files(files)


REACT_VITE_FILES = {
    "package.json": manifest(
        dependencies={"react": "^18.2.0", "react-dom": "^18.2.0"},
        dev_dependencies={"vite": "^5.0.0"},
        scripts={"dev": "vite", "build": "vite build"},
    ),
    "index.html": "<div id=root></div><script type=module src=/src/main.tsx></script>",
    "src/main.tsx": "import App from './App'",
    "src/App.tsx": "export default function App() { return null }",
}


class FakeProcess:
    """In-memory sandbox process with scripted output and exit."""

    def __init__(self, lines: Sequence[str] = (), exit_code: Optional[int] = 0):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._exited = asyncio.Event()
        self.exit_code = exit_code
        self.killed = False
        for line in lines:
            self._queue.put_nowait(line)
        if exit_code is not None:
            self._finish(exit_code)

    def push(self, line: str) -> None:
        self._queue.put_nowait(line)

    def _finish(self, exit_code: int) -> None:
        self.exit_code = exit_code
        self._queue.put_nowait(None)
        self._exited.set()

    def exit(self, exit_code: int = 0) -> None:
        if not self._exited.is_set():
            self._finish(exit_code)

    @property
    async def output(self):
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    async def wait(self) -> int:
        await self._exited.wait()
        return self.exit_code

    async def kill(self) -> None:
        self.killed = True
        self.exit(143)


ProcessPlan = Callable[["FakeSandbox", str, Sequence[str]], FakeProcess]


def default_plan(sandbox: "FakeSandbox", program: str, args: Sequence[str]) -> FakeProcess:
    """Install exits 0; anything else becomes a server that reports ready."""
    if "install" in args:
        return FakeProcess(["added 12 packages"], exit_code=0)
    process = FakeProcess(["server starting"], exit_code=None)
    asyncio.get_running_loop().call_soon(sandbox.emit_ready)
    return process


class FakeSandbox:
    """Records every interaction with the isolated-compute boundary."""

    def __init__(self, view_id: str, plan: ProcessPlan = default_plan, mount_error: Optional[Exception] = None):
        self.view_id = view_id
        self.plan = plan
        self.mount_error = mount_error
        self.mounts: List[FileTree] = []
        self.writes: Dict[str, str] = {}
        self.spawns: List[Tuple[str, Tuple[str, ...], Dict[str, str]]] = []
        self.processes: List[FakeProcess] = []
        self.listeners: List[Callable[[ServerReadyEvent], None]] = []
        self.teardown_count = 0
        self.teardown_gate: Optional[asyncio.Event] = None
        self.url = f"http://preview.test/{view_id}"

    async def mount(self, tree: FileTree) -> None:
        if self.mount_error is not None:
            raise self.mount_error
        self.mounts.append(tree)

    async def write_file(self, path: str, content: str) -> None:
        self.writes[path] = content

    async def spawn(self, program: str, args: Sequence[str] = (), env: Optional[Dict[str, str]] = None):
        self.spawns.append((program, tuple(args), dict(env or {})))
        process = self.plan(self, program, args)
        self.processes.append(process)
        return process

    def on_server_ready(self, listener):
        self.listeners.append(listener)

        def unsubscribe():
            if listener in self.listeners:
                self.listeners.remove(listener)

        return unsubscribe

    def emit_ready(self, port: int = 3000) -> None:
        for listener in list(self.listeners):
            listener(ServerReadyEvent(port=port, url=self.url))

    async def teardown(self) -> None:
        self.teardown_count += 1
        if self.teardown_gate is not None:
            await self.teardown_gate.wait()
        for process in self.processes:
            process.exit(137)


class FakeSandboxFactory:
    """Boots FakeSandbox instances; can be gated to hold a boot in flight."""

    def __init__(self, plan: ProcessPlan = default_plan, mount_error: Optional[Exception] = None):
        self.plan = plan
        self.mount_error = mount_error
        self.sandboxes: List[FakeSandbox] = []
        self.gate: Optional[asyncio.Event] = None

    @property
    def boot_count(self) -> int:
        return len(self.sandboxes)

    @property
    def teardown_count(self) -> int:
        return sum(sandbox.teardown_count for sandbox in self.sandboxes)

    async def boot(self, view_id: str) -> FakeSandbox:
        sandbox = FakeSandbox(view_id, self.plan, self.mount_error)
        self.sandboxes.append(sandbox)
        if self.gate is not None:
            await self.gate.wait()
        return sandbox


class FakeFetcher:
    """Snapshot fetcher serving fixed trees per branch."""

    def __init__(self, trees: Dict[Optional[str], FileTree], error: Optional[str] = None):
        self.trees = trees
        self.error = error
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.gate: Optional[asyncio.Event] = None

    async def fetch(self, repo_id: str, branch: Optional[str]) -> FileTree:
        self.calls.append((repo_id, branch))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise SnapshotFetchError(self.error, status_code=404)
        if branch in self.trees:
            return self.trees[branch]
        return self.trees[None]


class FakeEngine:
    """Secondary engine that returns a URL, fails, or never finishes."""

    def __init__(self, url: str = "http://bundler.test/", error: Optional[Exception] = None, hang: bool = False):
        self.url = url
        self.error = error
        self.hang = hang
        self.setups = []

    async def load(self, setup) -> str:
        self.setups.append(setup)
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()
        return self.url


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    """Configuration with short budgets and no .env file."""
    monkeypatch.setenv("PREVIEW_INSTALL_TIMEOUT", "2")
    monkeypatch.setenv("PREVIEW_START_TIMEOUT", "1")
    monkeypatch.setenv("PREVIEW_FULL_TOOLCHAIN_START_TIMEOUT", "3")
    monkeypatch.setenv("PREVIEW_SECONDARY_TIMEOUT", "0.5")
    monkeypatch.setenv("PREVIEW_SECONDARY_FULL_EMULATION_TIMEOUT", "2")
    monkeypatch.setenv("PREVIEW_OUTPUT_BUFFER_LINES", "50")
    return Config(env_file=tmp_path / ".env")
