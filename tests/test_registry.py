"""Tests for the per-view environment registry."""

import pytest

from livepreview.orchestrator import EnvironmentLifecycleController
from livepreview.registry import EnvironmentRegistry
from livepreview.state import Phase
from tests.conftest import REACT_VITE_FILES, FakeFetcher, FakeSandboxFactory, make_tree


@pytest.fixture
def factory():
    return FakeSandboxFactory()


@pytest.fixture
def build(config, factory):
    fetcher = FakeFetcher({None: make_tree(REACT_VITE_FILES)})

    def _build(view_id: str) -> EnvironmentLifecycleController:
        return EnvironmentLifecycleController(view_id, "acme/app", factory, fetcher, config=config)

    return _build


class TestEnvironmentRegistry:
    def test_same_controller_per_view(self, build):
        registry = EnvironmentRegistry()
        first = registry.get_or_create("view-1", build)
        assert registry.get_or_create("view-1", build) is first
        assert registry.get_or_create("view-2", build) is not first
        assert len(registry) == 2
        assert "view-1" in registry
        assert sorted(registry.view_ids()) == ["view-1", "view-2"]

    def test_get_unknown_view(self):
        assert EnvironmentRegistry().get("missing") is None

    @pytest.mark.asyncio
    async def test_release_tears_down(self, build, factory):
        registry = EnvironmentRegistry()
        controller = registry.get_or_create("view-1", build)
        await controller.boot()

        assert await registry.release("view-1") is True
        assert factory.teardown_count == 1
        assert controller.phase == Phase.IDLE
        assert "view-1" not in registry

    @pytest.mark.asyncio
    async def test_release_unknown_view(self):
        assert await EnvironmentRegistry().release("missing") is False

    @pytest.mark.asyncio
    async def test_release_all(self, build, factory):
        registry = EnvironmentRegistry()
        for view_id in ("a", "b", "c"):
            await registry.get_or_create(view_id, build).boot()
        assert await registry.release_all() == 3
        assert len(registry) == 0
        assert factory.teardown_count == 3
