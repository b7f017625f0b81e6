"""Tests for the Docker-backed sandbox using a mocked Docker client."""

import asyncio
import io
import tarfile
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound

from livepreview.errors import MountError, SandboxUnavailableError
from livepreview.filetree import tree_from_files
from livepreview.sandbox.container import WORKDIR, DockerSandbox, DockerSandboxFactory, PortAllocator


class FreePortAllocator(PortAllocator):
    """Allocator that does not touch real sockets."""

    def _is_port_free(self, port: int) -> bool:
        return True


def archive_members(archive: bytes) -> dict:
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        return {member.name: tar.extractfile(member).read().decode("utf-8") for member in tar.getmembers()}


@pytest.fixture
def docker_client():
    client = MagicMock()
    client.containers.get.side_effect = NotFound("no such container")
    container = MagicMock()
    container.name = "livepreview-view-1"
    container.id = "c0ffee"
    container.put_archive.return_value = True
    client.containers.run.return_value = container
    return client


@pytest.fixture
def allocator():
    return FreePortAllocator(8100, 8102)


class TestPortAllocator:
    def test_allocates_until_exhausted(self, allocator):
        assert allocator.allocate() == 8100
        assert allocator.allocate() == 8101
        assert allocator.allocate() is None

    def test_release_makes_port_available(self, allocator):
        port = allocator.allocate()
        allocator.release(port)
        assert allocator.allocate() == port


class TestDockerSandboxFactory:
    def test_boot_runs_container_with_mapped_port(self, config, docker_client, allocator):
        factory = DockerSandboxFactory(config, client=docker_client, allocator=allocator)
        sandbox = factory._boot_sync("view-1")

        kwargs = docker_client.containers.run.call_args.kwargs
        assert kwargs["ports"] == {"3000/tcp": 8100}
        assert kwargs["name"] == "livepreview-view-1"
        assert kwargs["labels"] == {"livepreview.view": "view-1"}
        assert kwargs["command"] == ["sleep", "infinity"]
        assert sandbox.host_port == 8100
        assert sandbox.url == "http://localhost:8100"

    def test_docker_down(self, config, docker_client, allocator):
        docker_client.ping.side_effect = DockerException("connection refused")
        factory = DockerSandboxFactory(config, client=docker_client, allocator=allocator)
        with pytest.raises(SandboxUnavailableError, match="Docker is not running"):
            factory._boot_sync("view-1")

    def test_no_free_ports(self, config, docker_client):
        allocator = FreePortAllocator(8100, 8101)
        allocator.allocate()
        factory = DockerSandboxFactory(config, client=docker_client, allocator=allocator)
        with pytest.raises(SandboxUnavailableError, match="No available ports"):
            factory._boot_sync("view-1")

    def test_api_error_releases_port(self, config, docker_client, allocator):
        docker_client.containers.run.side_effect = APIError("port is already allocated")
        factory = DockerSandboxFactory(config, client=docker_client, allocator=allocator)
        with pytest.raises(SandboxUnavailableError, match="already in use"):
            factory._boot_sync("view-1")
        assert allocator.allocate() == 8100


class TestDockerSandbox:
    @pytest.fixture
    def sandbox(self, config, docker_client, allocator):
        port = allocator.allocate()
        return DockerSandbox(docker_client, docker_client.containers.run.return_value, port, config, allocator)

    @pytest.mark.asyncio
    async def test_mount_sends_tar_archive(self, sandbox):
        await sandbox.mount(tree_from_files({"index.html": "<p>hi</p>", "src/app.js": "run()"}))
        path, archive = sandbox.container.put_archive.call_args.args
        assert path == WORKDIR
        assert archive_members(archive) == {"index.html": "<p>hi</p>", "src/app.js": "run()"}

    @pytest.mark.asyncio
    async def test_write_file_rejects_parent_paths(self, sandbox):
        with pytest.raises(MountError):
            await sandbox.write_file("../etc/passwd", "x")

    @pytest.mark.asyncio
    async def test_rejected_archive(self, sandbox):
        sandbox.container.put_archive.return_value = False
        with pytest.raises(MountError, match="rejected"):
            await sandbox.write_file("a.js", "x")

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent_and_releases_port(self, sandbox, allocator):
        await sandbox.teardown()
        await sandbox.teardown()
        sandbox.container.stop.assert_called_once()
        sandbox.container.remove.assert_called_once_with(force=True)
        assert allocator.allocate() == 8100

    @pytest.mark.asyncio
    async def test_watcher_stops_after_last_unsubscribe(self, sandbox):
        sandbox.config.ready_poll_interval = 0.01
        polls = []

        async def always_up(client):
            polls.append(client)
            return True

        sandbox._probe = always_up
        events = []
        unsubscribe = sandbox.on_server_ready(events.append)
        for _ in range(100):
            if events:
                break
            await asyncio.sleep(0.01)
        assert [event.url for event in events] == [sandbox.url]

        unsubscribe()
        await asyncio.wait_for(sandbox._watcher, 1)
        seen = len(polls)
        await asyncio.sleep(0.05)
        assert len(polls) == seen
        assert len(events) == 1
        await sandbox.teardown()
