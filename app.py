"""
Live Preview - Streamlit Application

Shows a running preview of a repository while its files are being edited.
Boots an isolated sandbox, streams install and dev-server output, and keeps
session edits on top of the fetched baseline.
"""

import asyncio
import threading
import uuid
from concurrent.futures import Future
from pathlib import Path
from typing import Optional

import streamlit as st

from livepreview.config import ConfigError, get_config
from livepreview.edits import InMemoryEditLog
from livepreview.logging_config import configure_logging
from livepreview.orchestrator import EnvironmentLifecycleController
from livepreview.registry import EnvironmentRegistry
from livepreview.sandbox.container import DockerSandboxFactory
from livepreview.schemas import EnvironmentSnapshot
from livepreview.snapshots import GitHubSnapshotFetcher, LocalSnapshotFetcher
from livepreview.state import ACTIVE_PHASES, Phase


# Page configuration
st.set_page_config(
    page_title="Live Preview",
    page_icon="🔭",
    layout="wide",
)

st.markdown("""
<style>
    .main-header {
        font-size: 2.2rem;
        font-weight: 700;
        color: #1E88E5;
        margin-bottom: 0.25rem;
    }
    .sub-header {
        font-size: 1.05rem;
        color: #666;
        margin-bottom: 1.5rem;
    }
</style>
""", unsafe_allow_html=True)


PHASE_LABELS = {
    Phase.IDLE: "⏸️ Idle",
    Phase.BOOTING: "🐳 Booting sandbox",
    Phase.FETCHING: "📥 Fetching files",
    Phase.MOUNTING: "📂 Mounting files",
    Phase.INSTALLING: "📦 Installing dependencies",
    Phase.STARTING: "🚀 Starting dev server",
    Phase.RUNNING: "✅ Running",
    Phase.ERROR: "❌ Error",
}


# =============================================================================
# RUNTIME
# =============================================================================

class PreviewRuntime:
    """Background event loop shared by every browser session of this server."""

    def __init__(self):
        config = get_config()
        configure_logging(config.log_level)
        self.config = config
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, name="livepreview-loop", daemon=True)
        self.thread.start()
        self.registry = EnvironmentRegistry()
        self.edit_log = InMemoryEditLog()
        self.sandbox_factory = DockerSandboxFactory(config)

    def submit(self, coro) -> Future:
        """Schedule a coroutine on the background loop."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro, timeout: Optional[float] = None):
        """Run a coroutine on the background loop and wait for its result."""
        return self.submit(coro).result(timeout)


@st.cache_resource
def get_runtime() -> PreviewRuntime:
    return PreviewRuntime()


def init_session_state():
    """Initialize session state variables."""
    if "view_id" not in st.session_state:
        st.session_state.view_id = uuid.uuid4().hex[:12]
    if "session_id" not in st.session_state:
        st.session_state.session_id = st.session_state.view_id
    if "controller_key" not in st.session_state:
        st.session_state.controller_key = None
    if "last_refresh" not in st.session_state:
        st.session_state.last_refresh = None


def validate_config() -> bool:
    """Validate configuration and show error if invalid."""
    try:
        get_config()
        return True
    except ConfigError as e:
        st.error(f"⚠️ Configuration Error\n\n{str(e)}")
        st.info("Fix the variables in your environment or `.env` file. See `.env.example` for reference.")
        return False


def get_controller(
    runtime: PreviewRuntime,
    repo_id: str,
    branch: Optional[str],
    local_root: Optional[str],
) -> EnvironmentLifecycleController:
    """Return the controller of this view, replacing it when the repository source changed."""
    view_id = st.session_state.view_id
    key = (repo_id, local_root)

    if st.session_state.controller_key != key and view_id in runtime.registry:
        runtime.run(runtime.registry.release(view_id))

    def factory(vid: str) -> EnvironmentLifecycleController:
        if local_root:
            fetcher = LocalSnapshotFetcher(Path(local_root), runtime.config)
        else:
            fetcher = GitHubSnapshotFetcher(config=runtime.config)
        return EnvironmentLifecycleController(
            view_id=vid,
            repo_id=repo_id,
            sandbox_factory=runtime.sandbox_factory,
            fetcher=fetcher,
            edit_log=runtime.edit_log,
            session_id=st.session_state.session_id,
            branch=branch,
            config=runtime.config,
        )

    controller = runtime.registry.get_or_create(view_id, factory)
    st.session_state.controller_key = key
    runtime.run(controller.set_branch(branch))
    return controller


# =============================================================================
# DISPLAY
# =============================================================================

def display_output(snapshot: EnvironmentSnapshot, tail: int = 200):
    st.markdown("### 📜 Output")
    if snapshot.output:
        st.code("\n".join(snapshot.output[-tail:]), language="text")
    else:
        st.caption("No output yet...")


def display_profile(snapshot: EnvironmentSnapshot):
    profile = snapshot.profile
    if profile is None:
        return
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("📦 Family", profile.family.value)
    with col2:
        st.metric("🧩 Framework", profile.framework or "None")
    with col3:
        st.metric("📄 Entry", profile.entry_point or "None")


def display_idle(runtime: PreviewRuntime, controller: EnvironmentLifecycleController):
    st.info("No preview running for this view.")
    if st.button("🚀 Start Preview", type="primary", use_container_width=True, key="boot"):
        runtime.submit(controller.boot())
        st.rerun()


def display_booting(runtime: PreviewRuntime, controller: EnvironmentLifecycleController, snapshot: EnvironmentSnapshot):
    st.warning(f"🔄 **{PHASE_LABELS[Phase(snapshot.phase)]}...** Node.js installs typically take 1-5 minutes.")
    display_profile(snapshot)

    col1, col2 = st.columns(2)
    with col1:
        if st.button("🔄 Check Status", type="primary", use_container_width=True, key="check_status"):
            st.rerun()
    with col2:
        if st.button("🛑 Cancel and Restart", use_container_width=True, key="restart_booting"):
            runtime.submit(controller.retry())
            st.rerun()

    display_output(snapshot)


def display_running(runtime: PreviewRuntime, controller: EnvironmentLifecycleController, snapshot: EnvironmentSnapshot):
    st.success("✅ Preview is running!")

    col1, col2 = st.columns([3, 1])
    with col1:
        st.code(snapshot.preview_url, language=None)
    with col2:
        st.link_button("🔗 Open", snapshot.preview_url, use_container_width=True)

    display_profile(snapshot)
    st.divider()

    col1, col2, col3 = st.columns(3)
    with col1:
        if st.button("📥 Pull Latest Files", use_container_width=True, key="refresh_files"):
            with st.spinner("Refreshing files..."):
                st.session_state.last_refresh = runtime.run(controller.refresh_files(), timeout=120)
            st.rerun()
    with col2:
        if st.button("🔄 Restart", use_container_width=True, key="retry_running"):
            runtime.submit(controller.retry())
            st.rerun()
    with col3:
        if st.button("🛑 Stop Preview", type="primary", use_container_width=True, key="stop_preview"):
            with st.spinner("Stopping preview..."):
                runtime.run(runtime.registry.release(st.session_state.view_id))
                st.session_state.controller_key = None
            st.rerun()

    result = st.session_state.last_refresh
    if result is not None:
        if result.success:
            message = "Files refreshed."
            if result.skipped_count:
                message += f" {result.skipped_count} file(s) skipped, they have local changes."
            st.info(message)
        else:
            st.warning(f"Refresh failed: {result.error}")

    display_output(snapshot)


def display_error(runtime: PreviewRuntime, controller: EnvironmentLifecycleController, snapshot: EnvironmentSnapshot):
    st.error(f"❌ Preview failed\n\n{snapshot.error}")
    if st.button("🔄 Retry", type="primary", use_container_width=True, key="retry_error"):
        runtime.submit(controller.retry())
        st.rerun()
    with st.expander("View output", expanded=True):
        display_output(snapshot)


def display_edits(runtime: PreviewRuntime):
    """Pending edits for this session, applied over the fetched baseline on boot."""
    session_id = st.session_state.session_id
    with st.expander("✏️ Pending Edits"):
        path = st.text_input("File path", placeholder="src/App.tsx", key="edit_path")
        content = st.text_area("Content", height=200, key="edit_content")
        if st.button("Record Edit", disabled=not path.strip(), key="record_edit"):
            runtime.edit_log.record(session_id, path.strip(), content)
            st.rerun()

        edits = runtime.run(runtime.edit_log.list_edits(session_id))
        active = [edit for edit in edits if not edit.reverted]
        if not active:
            st.caption("No pending edits.")
        for index, edit in enumerate(active):
            col1, col2 = st.columns([4, 1])
            with col1:
                st.write(f"📄 `{edit.path}` ({len(edit.content)} chars)")
            with col2:
                if st.button("Revert", key=f"revert_{index}_{edit.path}"):
                    runtime.edit_log.revert(session_id, edit.path)
                    st.rerun()
        st.caption("Edits take effect on the next boot; refreshing keeps edited files untouched.")


def main():
    """Main application entry point."""
    init_session_state()

    st.markdown('<p class="main-header">🔭 Live Preview</p>', unsafe_allow_html=True)
    st.markdown(
        '<p class="sub-header">Run any repository in an isolated sandbox and watch it while it changes</p>',
        unsafe_allow_html=True,
    )

    if not validate_config():
        return

    runtime = get_runtime()

    with st.sidebar:
        st.header("Repository")
        source = st.radio("Source", options=["GitHub", "Local directory"], index=0)
        local_root = None
        if source == "Local directory":
            local_root = st.text_input("Root directory", value=str(Path.cwd()))
            repo_id = st.text_input("Project folder", value=".")
        else:
            repo_id = st.text_input("Repository (owner/name)", placeholder="vercel/next.js")
        branch = st.text_input("Branch", placeholder="default branch").strip() or None

        st.divider()
        st.header("Session Info")
        st.write(f"🪪 View: `{st.session_state.view_id}`")
        st.write(f"🌐 Active previews: {len(runtime.registry)}")

    if not repo_id or not repo_id.strip():
        st.info("Enter a repository in the sidebar to start.")
        return

    controller = get_controller(runtime, repo_id.strip(), branch, local_root)
    snapshot = controller.snapshot

    st.subheader(PHASE_LABELS[Phase(snapshot.phase)])

    phase = Phase(snapshot.phase)
    if phase == Phase.IDLE:
        display_idle(runtime, controller)
    elif phase in ACTIVE_PHASES:
        display_booting(runtime, controller, snapshot)
    elif phase == Phase.RUNNING:
        display_running(runtime, controller, snapshot)
    else:
        display_error(runtime, controller, snapshot)

    st.divider()
    display_edits(runtime)


if __name__ == "__main__":
    main()
