"""
Orchestrator for the preview environment lifecycle.

One EnvironmentLifecycleController owns one sandbox for one view and drives it
through the phases:

    idle -> booting -> fetching -> mounting -> installing -> starting -> running

with ``error`` reachable from every non-idle phase. Every boot runs under an
attempt id; results delivered for a superseded attempt are dropped.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from livepreview.bundler import SecondaryBundlerSelector
from livepreview.config import Config, get_config
from livepreview.edits import EditLog
from livepreview.errors import InstallError, MountError, PhaseTimeoutError, PreviewError, SecondaryEngineError
from livepreview.filetree import FileTree, flatten, tree_from_files
from livepreview.overlay import apply_edits, exclusion_set, overlay_files, reconcile
from livepreview.profiler import ProjectProfiler
from livepreview.sandbox.base import Sandbox, SandboxFactory, SecondaryEngine
from livepreview.sandbox.supervisor import ProcessSupervisor, StartedServer
from livepreview.schemas import BundlerSetup, EnvironmentSnapshot, PendingEdit, ProjectProfile, RefreshResult
from livepreview.snapshots import SnapshotFetcher
from livepreview.state import Phase, create_initial_state

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[EnvironmentSnapshot], None]


class _Superseded(Exception):
    """Raised inside a boot attempt that is no longer current."""


class EnvironmentLifecycleController:
    """State machine owning the sandbox of a single view."""

    def __init__(
        self,
        view_id: str,
        repo_id: str,
        sandbox_factory: Optional[SandboxFactory],
        fetcher: SnapshotFetcher,
        edit_log: Optional[EditLog] = None,
        session_id: Optional[str] = None,
        branch: Optional[str] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        profiler: Optional[ProjectProfiler] = None,
        bundler_selector: Optional[SecondaryBundlerSelector] = None,
        secondary_engine: Optional[SecondaryEngine] = None,
        use_secondary: bool = False,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self.view_id = view_id
        self.repo_id = repo_id
        self.session_id = session_id
        self.use_secondary = use_secondary

        if use_secondary and secondary_engine is None:
            raise ValueError("use_secondary requires a secondary_engine")
        if not use_secondary and sandbox_factory is None:
            raise ValueError("a sandbox_factory is required unless use_secondary is set")

        self._factory = sandbox_factory
        self._fetcher = fetcher
        self._edit_log = edit_log
        self._supervisor = supervisor or ProcessSupervisor(self.config)
        self._profiler = profiler or ProjectProfiler(port=self.config.container_port)
        self._selector = bundler_selector or SecondaryBundlerSelector(self.config)
        self._engine = secondary_engine

        self.state = create_initial_state(view_id, self.config.output_buffer_lines)
        self._requested_branch = branch
        self._attempt = 0
        self._boot_task: Optional[asyncio.Task] = None
        self._sandbox: Optional[Sandbox] = None
        self._server: Optional[StartedServer] = None
        self._refresh_lock = asyncio.Lock()
        self._listeners: List[SnapshotListener] = []

    # =========================================================================
    # OBSERVABLE STATE
    # =========================================================================

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def requested_branch(self) -> Optional[str]:
        return self._requested_branch

    @property
    def snapshot(self) -> EnvironmentSnapshot:
        return self.state.snapshot()

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """
        Register a listener for snapshot changes.

        The listener is called once immediately with the current snapshot.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)
        listener(self.snapshot)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("snapshot listener failed", extra={"data": {"view_id": self.view_id}})

    def _update(self, attempt: int, **changes) -> None:
        """Apply state changes for ``attempt``; stale attempts are rejected."""
        self._check(attempt)
        for name, value in changes.items():
            setattr(self.state, name, value)
        self._publish()

    def _check(self, attempt: int) -> None:
        if attempt != self._attempt:
            raise _Superseded()

    def _sink(self, attempt: int) -> Callable[[str], None]:
        def sink(line: str) -> None:
            if attempt != self._attempt:
                return
            self.state.output.append(line)
            self._publish()
        return sink

    def _fail(self, attempt: int, message: str) -> None:
        if attempt != self._attempt:
            return
        self.state.phase = Phase.ERROR
        self.state.error = message
        self.state.output.append(f"Error: {message}")
        self._publish()

    # =========================================================================
    # BOOT
    # =========================================================================

    async def boot(self) -> EnvironmentSnapshot:
        """
        Boot the environment, or join the boot already in flight.

        Single-flight: while a boot is running or after it finished for the
        requested branch, further calls attach to it instead of starting a new
        one. Only retry() or a branch change resets this.

        Returns:
            Snapshot after the boot settles
        """
        if self._boot_task is None:
            self._boot_task = asyncio.create_task(self._run_boot(self._attempt))
        await asyncio.shield(self._boot_task)
        return self.snapshot

    async def _run_boot(self, attempt: int) -> None:
        branch = self._requested_branch
        logger.info(
            "boot.start",
            extra={"data": {"view_id": self.view_id, "repo": self.repo_id, "branch": branch, "attempt": attempt}},
        )
        try:
            if self.use_secondary:
                await self._boot_secondary(attempt, branch)
            else:
                await self._boot_primary(attempt, branch)
            logger.info("boot.running", extra={"data": {"view_id": self.view_id, "url": self.state.preview_url}})
        except _Superseded:
            logger.info("boot.superseded", extra={"data": {"view_id": self.view_id, "attempt": attempt}})
        except PreviewError as exc:
            logger.warning(
                "boot.failed",
                extra={"data": {"view_id": self.view_id, "error": str(exc), "kind": type(exc).__name__}},
            )
            self._fail(attempt, str(exc))
        except Exception as exc:
            logger.exception("boot.unexpected_error", extra={"data": {"view_id": self.view_id}})
            self._fail(attempt, str(exc) or type(exc).__name__)

        # A branch change that arrived mid-boot takes effect now
        if (
            attempt == self._attempt
            and self._requested_branch is not None
            and self._requested_branch != branch
        ):
            logger.info(
                "branch changed during boot",
                extra={"data": {"view_id": self.view_id, "booted": branch, "requested": self._requested_branch}},
            )
            await self._teardown()

    async def _list_edits(self) -> List[PendingEdit]:
        if self._edit_log is None or not self.session_id:
            return []
        return list(await self._edit_log.list_edits(self.session_id))

    async def _boot_primary(self, attempt: int, branch: Optional[str]) -> None:
        self._update(attempt, phase=Phase.BOOTING, error=None, booted_branch=branch)
        sandbox = await self._factory.boot(self.view_id)
        if attempt != self._attempt:
            await sandbox.teardown()
            raise _Superseded()
        self._sandbox = sandbox

        self._update(attempt, phase=Phase.FETCHING)
        tree = await self._fetcher.fetch(self.repo_id, branch)
        self._check(attempt)

        self._update(attempt, phase=Phase.MOUNTING)
        profile = await self._mount(attempt, sandbox, tree)

        self._update(attempt, phase=Phase.INSTALLING, profile=profile)
        sink = self._sink(attempt)
        exit_code = await self._supervisor.install(sandbox, profile, sink)
        self._check(attempt)
        if exit_code != 0:
            raise InstallError(exit_code, profile.install_command.display())

        self._update(attempt, phase=Phase.STARTING)

        def on_server_ready(url: str) -> None:
            if attempt == self._attempt:
                self.state.preview_url = url
                self._publish()

        server = await self._supervisor.start(sandbox, profile, on_server_ready, sink)
        self._check(attempt)
        self._server = server
        self._update(attempt, phase=Phase.RUNNING, preview_url=server.url)

    async def _mount(self, attempt: int, sandbox: Sandbox, tree: FileTree) -> ProjectProfile:
        """Reconcile against pending edits, mount, write edits, then profile."""
        edits = await self._list_edits()
        self._check(attempt)
        exclusions = exclusion_set(edits)
        pruned = reconcile(tree, exclusions)
        try:
            await sandbox.mount(pruned)
            self._check(attempt)
            written = await apply_edits(sandbox, edits)
        except PreviewError:
            raise
        except Exception as exc:
            raise MountError(f"Sandbox rejected the file tree: {exc}") from exc
        self._check(attempt)
        if written:
            self.state.output.append(f"Applied {written} pending edit(s)")

        # Profile the tree as mounted, including edited content
        return self._profiler.profile(self._overlay_tree(pruned, edits))

    @staticmethod
    def _overlay_tree(tree: FileTree, edits: List[PendingEdit]) -> FileTree:
        if not any(not edit.reverted for edit in edits):
            return tree
        return tree_from_files(overlay_files(flatten(tree), edits))

    async def _load_secondary(self, setup: BundlerSetup) -> str:
        try:
            return await asyncio.wait_for(self._engine.load(setup), timeout=setup.timeout_seconds)
        except asyncio.TimeoutError:
            raise PhaseTimeoutError("start", setup.timeout_seconds)
        except PreviewError:
            raise
        except Exception as exc:
            raise SecondaryEngineError(f"Secondary bundler failed: {exc}") from exc

    async def _boot_secondary(self, attempt: int, branch: Optional[str]) -> None:
        self._update(attempt, phase=Phase.BOOTING, error=None, booted_branch=branch)

        self._update(attempt, phase=Phase.FETCHING)
        tree = await self._fetcher.fetch(self.repo_id, branch)
        self._check(attempt)

        self._update(attempt, phase=Phase.MOUNTING)
        edits = await self._list_edits()
        self._check(attempt)
        setup = self._selector.build_setup(tree, edits)
        self.state.output.append(f"Secondary bundler: {setup.mode.value} ({setup.template or 'no template'})")

        self._update(attempt, phase=Phase.STARTING)
        url = await self._load_secondary(setup)
        self._update(attempt, phase=Phase.RUNNING, preview_url=url)

    # =========================================================================
    # REFRESH / RETRY / BRANCH
    # =========================================================================

    async def refresh_files(self) -> RefreshResult:
        """
        Refetch the baseline and remount it without restarting the server.

        Paths owned by pending edits are left untouched.

        Returns:
            RefreshResult with the number of skipped paths
        """
        if self.state.phase != Phase.RUNNING:
            return RefreshResult(success=False, skipped_count=0, error="Environment is not running")

        async with self._refresh_lock:
            if self.state.phase != Phase.RUNNING:
                return RefreshResult(success=False, skipped_count=0, error="Environment is not running")
            attempt = self._attempt
            try:
                tree = await self._fetcher.fetch(self.repo_id, self.state.booted_branch)
                edits = await self._list_edits()
                exclusions = exclusion_set(edits)
                if self.use_secondary:
                    url = await self._load_secondary(self._selector.build_setup(tree, edits))
                    if attempt == self._attempt:
                        self.state.preview_url = url
                elif attempt == self._attempt:
                    await self._sandbox.mount(reconcile(tree, exclusions))
            except Exception as exc:
                logger.warning(
                    "refresh failed",
                    exc_info=not isinstance(exc, PreviewError),
                    extra={"data": {"view_id": self.view_id, "error": str(exc)}},
                )
                return RefreshResult(success=False, skipped_count=0, error=str(exc) or type(exc).__name__)

            if attempt != self._attempt:
                return RefreshResult(success=False, skipped_count=0, error="Environment restarted during refresh")

            self.state.output.append(f"Refreshed files ({len(exclusions)} skipped with local changes)")
            self._publish()
            logger.info(
                "refreshed files",
                extra={"data": {"view_id": self.view_id, "skipped": len(exclusions)}},
            )
            return RefreshResult(success=True, skipped_count=len(exclusions))

    async def retry(self) -> EnvironmentSnapshot:
        """Tear down unconditionally, reset to idle and boot again."""
        logger.info("retry", extra={"data": {"view_id": self.view_id, "phase": self.state.phase.value}})
        await self._teardown()
        return await self.boot()

    async def set_branch(self, branch: Optional[str]) -> None:
        """
        React to a change of the requested branch.

        ``None`` (metadata not loaded yet) is ignored. After a finished boot, a
        different branch tears the environment down and leaves it idle; the
        owner boots again. During a boot the change is applied when it ends.
        """
        if branch is None:
            return
        self._requested_branch = branch
        task = self._boot_task
        if task is None or not task.done():
            return
        if branch != self.state.booted_branch:
            logger.info(
                "branch changed",
                extra={"data": {"view_id": self.view_id, "booted": self.state.booted_branch, "requested": branch}},
            )
            await self._teardown()

    async def close(self) -> None:
        """Tear down for good when the view goes away."""
        await self._teardown()
        self._listeners.clear()

    async def _teardown(self) -> None:
        self._attempt += 1
        sandbox, server = self._sandbox, self._server
        self._sandbox = None
        self._server = None
        self._boot_task = None

        # Reset before awaiting: a boot started during the teardown owns the state
        self.state.reset()
        self._publish()

        if server is not None:
            server.forwarder.cancel()
        if sandbox is not None:
            try:
                await sandbox.teardown()
            except Exception:
                logger.warning("sandbox teardown failed", exc_info=True, extra={"data": {"view_id": self.view_id}})
