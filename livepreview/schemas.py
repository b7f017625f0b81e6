"""
Pydantic schemas for the values exchanged with collaborators.
"""

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class PendingEdit(BaseModel):
    """An uncommitted, session-local file change."""
    path: str = Field(..., description="File path relative to the repository root")
    content: str = Field(..., description="Full edited content of the file")
    reverted: bool = Field(False, description="Whether the edit has been reverted by the user")


class ProjectFamily(str, Enum):
    """Framework family a project is classified into."""
    SERVER_RENDERED_FRAMEWORK = "server-rendered-framework"
    BUILD_TOOL_SPA = "build-tool-spa"
    LEGACY_SPA_TOOLCHAIN = "legacy-spa-toolchain"
    COMPONENT_FRAMEWORK_SPA = "component-framework-spa"
    SCRIPTED = "scripted"
    STATIC_SITE = "static-site"
    UNKNOWN = "unknown"


class StartCommand(BaseModel):
    """A program invocation inside the sandbox."""
    model_config = ConfigDict(frozen=True)

    program: str = Field(..., description="Executable to spawn")
    args: List[str] = Field(default_factory=list, description="Arguments passed to the program")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment variables")

    def display(self) -> str:
        return " ".join([self.program, *self.args])


class ProjectProfile(BaseModel):
    """Classification of a project used to decide how to run it."""
    model_config = ConfigDict(frozen=True)

    family: ProjectFamily = Field(..., description="Framework family")
    needs_full_toolchain: bool = Field(False, description="Whether the slow, heavy execution path is required")
    entry_point: Optional[str] = Field(None, description="Conventional source entry file, if found")
    start_command: StartCommand = Field(..., description="Command that starts the dev server")
    install_command: Optional[StartCommand] = Field(
        None, description="Dependency install command; None when nothing needs installing"
    )
    package_manager: Literal["npm", "pnpm", "yarn", "bun"] = Field("npm", description="Detected package manager")
    framework: Optional[str] = Field(None, description="Marker dependency that decided the classification")


class RefreshResult(BaseModel):
    """Outcome of refreshing the files of a running environment."""
    model_config = ConfigDict(frozen=True)

    success: bool = Field(..., description="Whether the remount happened")
    skipped_count: int = Field(0, description="Paths left untouched because local edits own them")
    error: Optional[str] = Field(None, description="Failure message, if any")


class BundlerMode(str, Enum):
    """How the secondary bundler engine should treat a project."""
    STATIC = "static"
    NEEDS_FULL_EMULATION = "needs-full-emulation"
    HTML_ENTRY = "html-entry"
    TEMPLATE = "template"


class TemplateInfo(BaseModel):
    """Result of the secondary bundler classification."""
    model_config = ConfigDict(frozen=True)

    mode: BundlerMode = Field(..., description="Bundling mode")
    template: Optional[str] = Field(None, description="Built-in template name; None keeps project entry files")
    entry: Optional[str] = Field(None, description="Entry file, as an absolute bundler path")
    use_full_emulation: bool = Field(False, description="Whether the slow full emulation path is needed")
    dependencies: Dict[str, str] = Field(default_factory=dict, description="Manifest dependencies forwarded to the engine")


class BundlerSetup(BaseModel):
    """Everything the secondary engine needs to load a project."""
    mode: BundlerMode = Field(..., description="Bundling mode")
    template: Optional[str] = Field(None, description="Built-in template name")
    entry: Optional[str] = Field(None, description="Entry file")
    active_file: Optional[str] = Field(None, description="File shown first in the engine")
    files: Dict[str, str] = Field(..., description="Admitted files keyed by absolute bundler path")
    dependencies: Dict[str, str] = Field(default_factory=dict, description="Dependencies to resolve")
    timeout_seconds: float = Field(..., description="Load budget in seconds")
    use_full_emulation: bool = Field(False, description="Whether the slow full emulation path is needed")


class EnvironmentSnapshot(BaseModel):
    """Immutable view of an environment handed to subscribers and the UI."""
    model_config = ConfigDict(frozen=True)

    view_id: str = Field(..., description="View that owns the environment")
    phase: str = Field(..., description="Current lifecycle phase")
    preview_url: Optional[str] = Field(None, description="Externally reachable preview URL")
    error: Optional[str] = Field(None, description="Error message when in the error phase")
    output: List[str] = Field(default_factory=list, description="Most recent output lines")
    booted_branch: Optional[str] = Field(None, description="Branch the running environment was booted from")
    profile: Optional[ProjectProfile] = Field(None, description="Profile of the mounted project")
