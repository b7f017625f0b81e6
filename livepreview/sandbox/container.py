"""
Docker Sandbox - Isolated preview environments backed by Docker containers.

This module handles:
- Starting one long-lived container per view with an exposed preview port
- Mounting file trees through in-memory tar archives
- Spawning streamed exec processes inside the container
- Emitting server-ready events by probing the mapped host port
- Tearing containers down and releasing their ports
"""

import asyncio
import logging
import socket
import threading
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set

import docker
import httpx
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from livepreview.config import Config, get_config
from livepreview.errors import MountError, SandboxUnavailableError, StartError
from livepreview.filetree import FileTree, flatten
from livepreview.sandbox.base import ServerReadyEvent, ServerReadyListener, Unsubscribe
from livepreview.utils import make_tar_bytes, normalize_path, safe_container_name

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

WORKDIR = "/app"

# First line printed by every exec wrapper, carrying the in-container PID
PID_MARKER = "__livepreview_pid__"

PROBE_TIMEOUT = 2.0


# =============================================================================
# PORT ALLOCATION
# =============================================================================

class PortAllocator:
    """Hands out host ports from a fixed range."""

    def __init__(self, start: int, end: int, host: str = "localhost"):
        self.start = start
        self.end = end
        self.host = host
        self._in_use: Set[int] = set()
        self._lock = threading.Lock()

    def allocate(self) -> Optional[int]:
        """
        Allocate an available port from the range.

        Returns:
            Available port number, or None if all ports are in use
        """
        with self._lock:
            for port in range(self.start, self.end):
                if port in self._in_use:
                    continue
                # Double-check port is actually free on the system
                if self._is_port_free(port):
                    self._in_use.add(port)
                    return port
        return None

    def release(self, port: int) -> None:
        with self._lock:
            self._in_use.discard(port)

    def _is_port_free(self, port: int) -> bool:
        """Check if a port is free on the system."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((self.host, port))
                return True
            except OSError:
                return False


# =============================================================================
# PROCESSES
# =============================================================================

class DockerProcess:
    """
    A streamed ``docker exec`` session.

    The blocking output stream is read on a worker thread and handed to the
    event loop line by line through a queue.
    """

    def __init__(self, api, container_id: str, exec_id: str, loop: asyncio.AbstractEventLoop):
        self._api = api
        self._container_id = container_id
        self._exec_id = exec_id
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pid: Optional[str] = None
        self._exit_code: Optional[int] = None
        self._pump = loop.run_in_executor(None, self._read_stream)

    def _put(self, item: Optional[str]) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def _read_stream(self) -> None:
        pending = ""
        try:
            for chunk in self._api.exec_start(self._exec_id, stream=True):
                pending += chunk.decode("utf-8", errors="replace")
                *lines, pending = pending.split("\n")
                for line in lines:
                    self._emit(line)
            if pending:
                self._emit(pending)
        except DockerException as exc:
            self._put(f"[sandbox] output stream failed: {exc}")
        finally:
            self._put(None)

    def _emit(self, line: str) -> None:
        line = line.rstrip("\r")
        if self._pid is None and line.startswith(PID_MARKER):
            self._pid = line[len(PID_MARKER):].strip()
            return
        self._put(line)

    @property
    async def output(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    async def wait(self) -> int:
        await asyncio.shield(self._pump)
        while self._exit_code is None:
            info = await asyncio.to_thread(self._api.exec_inspect, self._exec_id)
            if not info.get("Running") and info.get("ExitCode") is not None:
                self._exit_code = int(info["ExitCode"])
                break
            await asyncio.sleep(0.1)
        return self._exit_code

    async def kill(self) -> None:
        if self._pid is None or self._exit_code is not None:
            return
        script = f"kill -TERM -- -{self._pid} 2>/dev/null || kill -TERM {self._pid} 2>/dev/null || true"
        try:
            exec_id = await asyncio.to_thread(
                self._api.exec_create, self._container_id, ["sh", "-c", script]
            )
            await asyncio.to_thread(self._api.exec_start, exec_id["Id"])
        except (NotFound, APIError) as exc:
            logger.debug("kill failed", extra={"data": {"pid": self._pid, "error": str(exc)}})


# =============================================================================
# SANDBOX
# =============================================================================

class DockerSandbox:
    """One running container owned by a single lifecycle controller."""

    def __init__(
        self,
        client,
        container,
        host_port: int,
        config: Config,
        allocator: Optional[PortAllocator] = None,
    ):
        self.client = client
        self.container = container
        self.host_port = host_port
        self.config = config
        self._allocator = allocator
        self._listeners: List[ServerReadyListener] = []
        self._watcher: Optional[asyncio.Task] = None
        self._torn_down = False

    @property
    def url(self) -> str:
        return f"http://{self.config.preview_host}:{self.host_port}"

    async def _put_files(self, files: Dict[str, str]) -> None:
        for path in files:
            if ".." in normalize_path(path).split("/"):
                raise MountError(f"Invalid path outside the project: {path}")
        archive = make_tar_bytes(files)
        try:
            ok = await asyncio.to_thread(self.container.put_archive, WORKDIR, archive)
        except APIError as exc:
            raise MountError(f"Sandbox rejected files: {exc.explanation or exc}") from exc
        if not ok:
            raise MountError("Sandbox rejected files")

    async def mount(self, tree: FileTree) -> None:
        files = flatten(tree)
        await self._put_files(files)
        logger.info("mounted tree", extra={"data": {"container": self.container.name, "files": len(files)}})

    async def write_file(self, path: str, content: str) -> None:
        # Extracting the archive creates missing parent directories
        await self._put_files({path: content})

    async def spawn(
        self,
        program: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
    ) -> DockerProcess:
        if self._torn_down:
            raise StartError("Sandbox has been torn down")
        command = ["sh", "-c", f'echo "{PID_MARKER} $$"; exec "$@"', "sh", program, *args]
        try:
            exec_info = await asyncio.to_thread(
                self.client.api.exec_create,
                self.container.id,
                command,
                stdout=True,
                stderr=True,
                workdir=WORKDIR,
                environment=env or None,
            )
        except APIError as exc:
            raise StartError(f"Could not spawn {program}: {exc.explanation or exc}") from exc
        logger.debug("spawned process", extra={"data": {"program": program, "args": list(args)}})
        return DockerProcess(self.client.api, self.container.id, exec_info["Id"], asyncio.get_running_loop())

    def on_server_ready(self, listener: ServerReadyListener) -> Unsubscribe:
        self._listeners.append(listener)
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.get_running_loop().create_task(self._watch_port())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _probe(self, client: httpx.AsyncClient) -> bool:
        try:
            await client.get(self.url, timeout=PROBE_TIMEOUT)
            return True
        except httpx.HTTPError:
            return False

    async def _watch_port(self) -> None:
        """
        Poll the mapped port and fire listeners when a server comes up.

        docker-proxy accepts TCP connections on the host port even when nothing
        listens inside the container, so readiness needs an HTTP response.
        """
        listening = False
        async with httpx.AsyncClient() as client:
            while not self._torn_down and self._listeners:
                up = await self._probe(client)
                if up and not listening:
                    event = ServerReadyEvent(port=self.config.container_port, url=self.url)
                    logger.info("server ready", extra={"data": {"url": event.url}})
                    for listener in list(self._listeners):
                        listener(event)
                listening = up
                await asyncio.sleep(self.config.ready_poll_interval)

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self._listeners.clear()
        if self._watcher is not None:
            self._watcher.cancel()
        try:
            await asyncio.to_thread(self.container.stop, timeout=2)
            await asyncio.to_thread(self.container.remove, force=True)
        except NotFound:
            pass
        except APIError as exc:
            logger.warning("container teardown failed", extra={"data": {"container": self.container.name, "error": str(exc)}})
        finally:
            if self._allocator is not None:
                self._allocator.release(self.host_port)
        logger.info("sandbox torn down", extra={"data": {"container": self.container.name}})


# =============================================================================
# FACTORY
# =============================================================================

def _cleanup_old_containers(client, container_name: str) -> None:
    """Remove any existing container with the same name."""
    try:
        existing = client.containers.get(container_name)
    except NotFound:
        return
    existing.remove(force=True)


class DockerSandboxFactory:
    """Boots DockerSandbox instances from the configured image."""

    def __init__(self, config: Optional[Config] = None, client=None, allocator: Optional[PortAllocator] = None):
        self.config = config or get_config()
        self._client = client
        self.allocator = allocator or PortAllocator(self.config.port_range_start, self.config.port_range_end)

    def _get_client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _boot_sync(self, view_id: str):
        try:
            client = self._get_client()
            client.ping()
        except DockerException as exc:
            raise SandboxUnavailableError("Docker is not running. Please start Docker and try again.") from exc

        # Pull image if needed
        image = self.config.sandbox_image
        try:
            client.images.get(image)
        except ImageNotFound:
            logger.info("pulling sandbox image", extra={"data": {"image": image}})
            client.images.pull(image)

        port = self.allocator.allocate()
        if port is None:
            raise SandboxUnavailableError("No available ports. Too many preview sandboxes running.")

        container_name = safe_container_name(view_id)
        internal_port = self.config.container_port
        try:
            _cleanup_old_containers(client, container_name)
            container = client.containers.run(
                image=image,
                command=["sleep", "infinity"],
                working_dir=WORKDIR,
                ports={f"{internal_port}/tcp": port},
                mem_limit=self.config.memory_limit,
                cpu_period=100000,
                cpu_quota=int(100000 * self.config.cpu_limit),
                detach=True,
                remove=False,
                name=container_name,
                labels={"livepreview.view": view_id},
                environment={
                    "HOST": "0.0.0.0",
                    "PORT": str(internal_port),
                    "CHOKIDAR_USEPOLLING": "true",  # File watching in Docker
                },
            )
        except APIError as exc:
            self.allocator.release(port)
            error_msg = str(exc)
            if "port is already allocated" in error_msg.lower():
                raise SandboxUnavailableError(f"Port {port} is already in use. Please try again.") from exc
            raise SandboxUnavailableError(f"Docker API error: {error_msg[:200]}") from exc

        logger.info(
            "sandbox booted",
            extra={"data": {"view_id": view_id, "container": container_name, "host_port": port}},
        )
        return DockerSandbox(client, container, port, self.config, self.allocator)

    async def boot(self, view_id: str) -> DockerSandbox:
        return await asyncio.to_thread(self._boot_sync, view_id)
