"""
Process Supervisor - Run install then start inside a sandbox.

Two phases, strictly sequential:
1. Install: run the dependency install command, stream output, report the exit code
2. Start: spawn the dev server, stream output, wait for the sandbox's
   server-ready event

Output is pushed to a caller-supplied sink by one forwarding task per process,
so streaming never blocks completion detection.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from livepreview.config import Config, get_config
from livepreview.errors import InstallError, PhaseTimeoutError, PreviewError, StartError
from livepreview.sandbox.base import Sandbox, SandboxProcess, ServerReadyEvent
from livepreview.schemas import ProjectProfile

logger = logging.getLogger(__name__)

OutputSink = Callable[[str], None]

# Grace period for the forwarder to drain output after a process exits
DRAIN_TIMEOUT = 5.0


def _discard(_line: str) -> None:
    pass


@dataclass
class StartedServer:
    """A dev server that reported ready."""
    process: SandboxProcess
    url: str
    port: int
    forwarder: asyncio.Task

    async def stop(self) -> None:
        self.forwarder.cancel()
        await self.process.kill()


class ProcessSupervisor:
    """Runs the install and start phases with phase-scoped timeouts."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def start_timeout_for(self, profile: ProjectProfile) -> float:
        if profile.needs_full_toolchain:
            return self.config.full_toolchain_start_timeout
        return self.config.start_timeout

    @staticmethod
    async def _forward(process: SandboxProcess, sink: OutputSink) -> None:
        async for line in process.output:
            sink(line)

    @staticmethod
    async def _drain(forwarder: asyncio.Task) -> None:
        try:
            await asyncio.wait_for(forwarder, timeout=DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("output forwarder did not finish after exit")

    async def install(
        self,
        handle: Sandbox,
        profile: ProjectProfile,
        sink: OutputSink = _discard,
    ) -> int:
        """
        Run the install command of a profile.

        Args:
            handle: Sandbox with the project mounted
            profile: Profile whose install command to run
            sink: Receives every output line

        Returns:
            Exit code of the install command (0 when there is nothing to install)

        Raises:
            InstallError: If the command cannot be spawned
            PhaseTimeoutError: If the install budget is exceeded
        """
        command = profile.install_command
        if command is None:
            logger.debug("no install step for profile", extra={"data": {"family": profile.family.value}})
            return 0

        timeout = self.config.install_timeout
        sink(f"$ {command.display()}")
        logger.info("install.start", extra={"data": {"command": command.display(), "timeout": timeout}})

        try:
            process = await handle.spawn(command.program, command.args, command.env)
        except PreviewError:
            raise
        except Exception as exc:
            raise InstallError(-1, command.display(), f"Could not run {command.display()}: {exc}") from exc

        forwarder = asyncio.create_task(self._forward(process, sink))
        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            await process.kill()
            forwarder.cancel()
            logger.warning("install.timeout", extra={"data": {"timeout": timeout}})
            raise PhaseTimeoutError("install", timeout)

        await self._drain(forwarder)
        logger.info("install.complete", extra={"data": {"exit_code": exit_code}})
        return exit_code

    async def start(
        self,
        handle: Sandbox,
        profile: ProjectProfile,
        on_server_ready: Callable[[str], None],
        sink: OutputSink = _discard,
    ) -> StartedServer:
        """
        Spawn the start command and wait for the server-ready event.

        Args:
            handle: Sandbox with dependencies installed
            profile: Profile whose start command to run
            on_server_ready: Called exactly once with the preview URL
            sink: Receives every output line, before and after ready

        Returns:
            StartedServer whose forwarder keeps streaming output

        Raises:
            StartError: If the command cannot be spawned or exits before ready
            PhaseTimeoutError: If the server is not ready within the start budget
        """
        command = profile.start_command
        timeout = self.start_timeout_for(profile)
        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()

        def _on_ready(event: ServerReadyEvent) -> None:
            if not ready.done():
                ready.set_result(event)

        unsubscribe = handle.on_server_ready(_on_ready)
        try:
            sink(f"$ {command.display()}")
            logger.info("start.spawn", extra={"data": {"command": command.display(), "timeout": timeout}})
            try:
                process = await handle.spawn(command.program, command.args, command.env)
            except Exception as exc:
                raise StartError(f"Could not start {command.display()}: {exc}") from exc

            forwarder = asyncio.create_task(self._forward(process, sink))
            exited = asyncio.ensure_future(process.wait())
            done, _ = await asyncio.wait({ready, exited}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if ready in done:
                exited.cancel()
                event: ServerReadyEvent = ready.result()
                logger.info("start.ready", extra={"data": {"port": event.port, "url": event.url}})
                on_server_ready(event.url)
                return StartedServer(process=process, url=event.url, port=event.port, forwarder=forwarder)

            if exited in done:
                exit_code = exited.result()
                await self._drain(forwarder)
                raise StartError(f"{command.display()} exited with code {exit_code} before the server was ready")

            exited.cancel()
            await process.kill()
            forwarder.cancel()
            logger.warning("start.timeout", extra={"data": {"timeout": timeout}})
            raise PhaseTimeoutError("start", timeout)
        finally:
            unsubscribe()
            if not ready.done():
                ready.cancel()
