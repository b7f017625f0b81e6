"""
State definitions for the environment lifecycle.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from livepreview.sandbox.output import OutputBuffer
from livepreview.schemas import EnvironmentSnapshot, ProjectProfile


class Phase(str, Enum):
    """One state in the boot/run lifecycle."""
    IDLE = "idle"
    BOOTING = "booting"
    FETCHING = "fetching"
    MOUNTING = "mounting"
    INSTALLING = "installing"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


# Phases during which a boot attempt is in progress
ACTIVE_PHASES = frozenset({
    Phase.BOOTING,
    Phase.FETCHING,
    Phase.MOUNTING,
    Phase.INSTALLING,
    Phase.STARTING,
})


@dataclass
class EnvironmentState:
    """
    Mutable environment record owned by a single lifecycle controller.

    Only the controller writes to it; everyone else sees EnvironmentSnapshot.
    """
    view_id: str
    phase: Phase = Phase.IDLE
    preview_url: Optional[str] = None
    error: Optional[str] = None
    booted_branch: Optional[str] = None
    profile: Optional[ProjectProfile] = None
    output: OutputBuffer = field(default_factory=OutputBuffer)

    def reset(self) -> None:
        """Return to idle, dropping everything learned by the last boot."""
        self.phase = Phase.IDLE
        self.preview_url = None
        self.error = None
        self.booted_branch = None
        self.profile = None
        self.output.clear()

    def snapshot(self) -> EnvironmentSnapshot:
        return EnvironmentSnapshot(
            view_id=self.view_id,
            phase=self.phase.value,
            preview_url=self.preview_url,
            error=self.error,
            output=self.output.snapshot(),
            booted_branch=self.booted_branch,
            profile=self.profile,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for session storage."""
        return self.snapshot().model_dump(mode="json")


def create_initial_state(view_id: str, output_buffer_lines: int = 2000) -> EnvironmentState:
    """
    Create an idle environment state.

    Args:
        view_id: View that owns the environment
        output_buffer_lines: Capacity of the output ring buffer

    Returns:
        Initialized EnvironmentState
    """
    return EnvironmentState(view_id=view_id, output=OutputBuffer(output_buffer_lines))
