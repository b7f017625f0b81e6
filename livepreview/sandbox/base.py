"""Isolated-compute interfaces consumed by the preview core."""

from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional, Protocol, Sequence, runtime_checkable

from livepreview.filetree import FileTree
from livepreview.schemas import BundlerSetup


@dataclass(frozen=True)
class ServerReadyEvent:
    """Emitted by a sandbox when something starts listening on a port."""
    port: int
    url: str


ServerReadyListener = Callable[[ServerReadyEvent], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class SandboxProcess(Protocol):
    """A process spawned inside a sandbox."""

    @property
    def output(self) -> AsyncIterator[str]:
        """Async iterator of output lines (stdout and stderr interleaved)."""
        ...

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        ...

    async def kill(self) -> None:
        ...


@runtime_checkable
class Sandbox(Protocol):
    """Handle to one isolated execution context."""

    async def mount(self, tree: FileTree) -> None:
        ...

    async def write_file(self, path: str, content: str) -> None:
        """Write a file, creating parent directories as needed."""
        ...

    async def spawn(
        self,
        program: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
    ) -> SandboxProcess:
        ...

    def on_server_ready(self, listener: ServerReadyListener) -> Unsubscribe:
        ...

    async def teardown(self) -> None:
        ...


@runtime_checkable
class SandboxFactory(Protocol):
    """Creates sandboxes; the only boundary to the host compute infrastructure."""

    async def boot(self, view_id: str) -> Sandbox:
        ...


@runtime_checkable
class SecondaryEngine(Protocol):
    """Fallback in-process bundler engine."""

    async def load(self, setup: BundlerSetup) -> str:
        """Load a project and return its preview URL."""
        ...
