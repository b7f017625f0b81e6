"""
Environment Registry - Track one lifecycle controller per view.

Responsibilities:
- Create the controller for a view on first use
- Hand the same controller to every later caller for that view
- Release controllers (tearing their sandbox down) when views go away
"""

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional

from livepreview.orchestrator import EnvironmentLifecycleController

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[str], EnvironmentLifecycleController]


class EnvironmentRegistry:
    """
    Explicit registry of environment controllers keyed by view id.

    Owned by the application instead of living at module level, so separate
    panels or tests never share hidden state.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._controllers: Dict[str, EnvironmentLifecycleController] = {}

    def get_or_create(self, view_id: str, factory: ControllerFactory) -> EnvironmentLifecycleController:
        """
        Return the controller for ``view_id``, creating it with ``factory`` if needed.

        Args:
            view_id: View identifier
            factory: Called with the view id when no controller exists yet

        Returns:
            The single controller for the view
        """
        with self._lock:
            controller = self._controllers.get(view_id)
            if controller is None:
                controller = factory(view_id)
                self._controllers[view_id] = controller
                logger.debug("registered controller", extra={"data": {"view_id": view_id}})
            return controller

    def get(self, view_id: str) -> Optional[EnvironmentLifecycleController]:
        """Get the controller of a view, if any."""
        with self._lock:
            return self._controllers.get(view_id)

    def view_ids(self) -> List[str]:
        with self._lock:
            return list(self._controllers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._controllers)

    def __contains__(self, view_id: str) -> bool:
        with self._lock:
            return view_id in self._controllers

    async def release(self, view_id: str) -> bool:
        """
        Remove a view's controller and tear its environment down.

        Returns:
            True if a controller was registered for the view
        """
        with self._lock:
            controller = self._controllers.pop(view_id, None)
        if controller is None:
            return False
        await controller.close()
        logger.info("released environment", extra={"data": {"view_id": view_id}})
        return True

    async def release_all(self) -> int:
        """
        Release every registered controller.

        Returns:
            Number of controllers released
        """
        with self._lock:
            controllers = list(self._controllers.values())
            self._controllers.clear()
        await asyncio.gather(*(controller.close() for controller in controllers))
        return len(controllers)
