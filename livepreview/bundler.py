"""
Secondary Bundler Selection - Prepare a project for the in-process bundler.

This module handles:
- Classifying a project into a bundling mode and built-in template
- Admitting only files the secondary engine can handle
- Rewriting module-time env access to the process-time form
- Building the BundlerSetup handed to the secondary engine

The classification is independent of the ProjectProfiler: the secondary engine
ships default templates that would otherwise replace the project's own entry
files, so it needs its own template decision.
"""

import json
import logging
import re
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from livepreview.config import Config, get_config
from livepreview.filetree import FileTree, flatten
from livepreview.overlay import overlay_files
from livepreview.profiler import (
    ENTRY_CANDIDATES,
    HTML_ENTRY_BUNDLER_MARKERS,
    SERVER_FRAMEWORK_MARKERS,
    STATIC_ENTRY_CANDIDATES,
    string_map,
)
from livepreview.schemas import BundlerMode, BundlerSetup, PendingEdit, TemplateInfo
from livepreview.utils import is_binary_path

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_ADMITTED_BYTES = 100_000

EXCLUDE_PATTERNS = (
    re.compile(r"node_modules"),
    re.compile(r"\.lock$"),
    re.compile(r"package-lock\.json$"),
    re.compile(r"yarn\.lock$"),
    re.compile(r"pnpm-lock\.yaml$"),
    re.compile(r"\.git/"),
    re.compile(r"\.next/"),
    re.compile(r"dist/"),
    re.compile(r"build/"),
    re.compile(r"\.env"),
    re.compile(r"vite\.config\.(js|ts)$"),
)

# Vector images are binary-like for the bundler too
EXTRA_BINARY_EXTENSIONS = (".svg",)

IMPORT_META_ENV_MEMBER = re.compile(r"import\.meta\.env\.(\w+)")
IMPORT_META_ENV = re.compile(r"import\.meta\.env")

# (dependency marker, template, TypeScript template)
UI_TEMPLATES = (
    ("react", "react", "react-ts"),
    ("react-dom", "react", "react-ts"),
    ("vue", "vue", "vue-ts"),
    ("svelte", "svelte", "svelte"),
    ("@angular/core", "angular", "angular"),
)


def _bundler_path(path: str) -> str:
    return path if path.startswith("/") else f"/{path}"


BUNDLER_ENTRY_CANDIDATES = tuple(_bundler_path(p) for p in ENTRY_CANDIDATES)
BUNDLER_STATIC_CANDIDATES = tuple(_bundler_path(p) for p in STATIC_ENTRY_CANDIDATES)


# =============================================================================
# FILE ADMISSION
# =============================================================================

def rewrite_env_access(code: str) -> str:
    """Rewrite ``import.meta.env`` references to ``process.env``."""
    code = IMPORT_META_ENV_MEMBER.sub(r"process.env.\1", code)
    return IMPORT_META_ENV.sub("process.env", code)


def is_admitted(path: str, code: str, max_bytes: int = MAX_ADMITTED_BYTES) -> bool:
    if any(pattern.search(path) for pattern in EXCLUDE_PATTERNS):
        return False
    if is_binary_path(path) or path.lower().endswith(EXTRA_BINARY_EXTENSIONS):
        return False
    return len(code) <= max_bytes


def admit_files(files: Mapping[str, str], max_bytes: int = MAX_ADMITTED_BYTES) -> Dict[str, str]:
    """
    Filter and rewrite files for the secondary engine.

    Args:
        files: Flat mapping of paths to content
        max_bytes: Largest content length admitted

    Returns:
        Admitted files keyed by absolute bundler path
    """
    admitted: Dict[str, str] = {}
    for path, code in files.items():
        key = _bundler_path(path)
        if not is_admitted(key, code, max_bytes):
            continue
        admitted[key] = rewrite_env_access(code)
    return admitted


# =============================================================================
# TEMPLATE DETECTION
# =============================================================================

def find_entry_point(files: Mapping[str, str]) -> Optional[str]:
    for candidate in BUNDLER_ENTRY_CANDIDATES:
        if candidate in files:
            return candidate
    return None


def find_static_entry(files: Mapping[str, str]) -> str:
    """Locate the HTML entry, scanning for any index.html as a last resort."""
    for candidate in BUNDLER_STATIC_CANDIDATES:
        if candidate in files:
            return candidate
    for path in files:
        if path.endswith("/index.html"):
            return path
    return "/index.html"


class _Manifest:
    """Parsed manifest view used by the selector rules."""

    def __init__(self, files: Mapping[str, str], data: Dict):
        self.files = files
        self.runtime_dependencies = string_map(data.get("dependencies"))
        self.dependencies = {**self.runtime_dependencies, **string_map(data.get("devDependencies"))}
        self.scripts = string_map(data.get("scripts"))
        self.has_tsconfig = "/tsconfig.json" in files
        self.has_index_html = "/index.html" in files

    def uses_html_entry_bundler(self) -> bool:
        for marker in HTML_ENTRY_BUNDLER_MARKERS:
            if marker in self.dependencies:
                return True
            if re.search(rf"\b{re.escape(marker)}\b", " ".join(self.scripts.values())):
                return True
        return False


SelectorRule = Callable[[_Manifest], Optional[TemplateInfo]]


def select_static(manifest: _Manifest) -> Optional[TemplateInfo]:
    if not manifest.scripts:
        return TemplateInfo(mode=BundlerMode.STATIC, entry=find_static_entry(manifest.files))
    return None


def select_full_emulation(manifest: _Manifest) -> Optional[TemplateInfo]:
    if any(marker in manifest.dependencies for marker in SERVER_FRAMEWORK_MARKERS):
        return TemplateInfo(mode=BundlerMode.NEEDS_FULL_EMULATION, template="node", use_full_emulation=True)
    return None


def select_html_entry(manifest: _Manifest) -> Optional[TemplateInfo]:
    # Checked before the UI templates: a built-in template would replace the
    # project's own index.html.
    if manifest.uses_html_entry_bundler() and manifest.has_index_html:
        return TemplateInfo(
            mode=BundlerMode.HTML_ENTRY,
            template=None,
            entry="/index.html",
            dependencies=dict(manifest.runtime_dependencies),
        )
    return None


def select_ui_template(manifest: _Manifest) -> Optional[TemplateInfo]:
    for marker, template, ts_template in UI_TEMPLATES:
        if marker in manifest.dependencies:
            return TemplateInfo(
                mode=BundlerMode.TEMPLATE,
                template=ts_template if manifest.has_tsconfig else template,
                entry=find_entry_point(manifest.files),
            )
    return None


def select_vanilla(manifest: _Manifest) -> Optional[TemplateInfo]:
    template = "vanilla-ts" if manifest.has_tsconfig else "vanilla"
    return TemplateInfo(mode=BundlerMode.TEMPLATE, template=template)


DEFAULT_SELECTOR_RULES: Tuple[SelectorRule, ...] = (
    select_static,
    select_full_emulation,
    select_html_entry,
    select_ui_template,
    select_vanilla,
)


# =============================================================================
# SELECTOR
# =============================================================================

class SecondaryBundlerSelector:
    """Template ladder and setup builder for the secondary engine."""

    def __init__(self, config: Optional[Config] = None, rules: Sequence[SelectorRule] = DEFAULT_SELECTOR_RULES):
        self.config = config or get_config()
        self.rules = tuple(rules)

    def select(self, files: Mapping[str, str]) -> TemplateInfo:
        """
        Classify admitted files.

        Args:
            files: Files keyed by absolute bundler path

        Returns:
            TemplateInfo describing mode, template and entry
        """
        raw = files.get("/package.json")
        if raw is not None:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                manifest = _Manifest(files, data)
                for rule in self.rules:
                    result = rule(manifest)
                    if result is not None:
                        return result

        if "/index.html" in files:
            return TemplateInfo(mode=BundlerMode.STATIC, entry=find_static_entry(files))
        return TemplateInfo(mode=BundlerMode.TEMPLATE, template="vanilla")

    def timeout_for(self, info: TemplateInfo) -> float:
        if info.use_full_emulation:
            return self.config.secondary_full_emulation_timeout
        return self.config.secondary_timeout

    def build_setup(self, tree: FileTree, edits: Iterable[PendingEdit] = ()) -> BundlerSetup:
        """
        Flatten, admit, overlay edits and classify a snapshot.

        Args:
            tree: Baseline snapshot
            edits: Pending edits for the session

        Returns:
            BundlerSetup for the secondary engine
        """
        files = admit_files(overlay_files(flatten(tree), edits), self.config.max_file_bytes)
        info = self.select(files)

        active_file = info.entry if info.entry in files else None
        setup = BundlerSetup(
            mode=info.mode,
            template=info.template,
            entry=info.entry,
            active_file=active_file,
            files=files,
            dependencies=info.dependencies,
            timeout_seconds=self.timeout_for(info),
            use_full_emulation=info.use_full_emulation,
        )
        logger.info(
            "prepared secondary bundler setup",
            extra={"data": {
                "mode": setup.mode.value,
                "template": setup.template,
                "entry": setup.entry,
                "files": len(files),
            }},
        )
        return setup
