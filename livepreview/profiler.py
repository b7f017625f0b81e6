"""
Project Profiler - Classify a fetched repository to decide how to run it.

This module handles:
- Reading the package manifest and merging declared dependencies
- Classifying the project with an ordered rule ladder (first match wins)
- Resolving the conventional source entry file
- Choosing the install and dev-server commands for the sandbox

Every rule is a plain function taking ProjectFacts and returning a
Classification or None, so each step of the ladder can be tested on its own.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, Dict, Optional, Sequence, Tuple

from livepreview.filetree import FileTree, get_file, has_file, iter_files
from livepreview.schemas import ProjectFamily, ProjectProfile, StartCommand

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MANIFEST_FILE = "package.json"
TSCONFIG_FILE = "tsconfig.json"

# Full-stack meta-frameworks and standalone HTTP servers
SERVER_FRAMEWORK_MARKERS = (
    "next",
    "nuxt",
    "@remix-run/dev",
    "astro",
    "express",
    "fastify",
    "koa",
    "hapi",
    "@hapi/hapi",
)

# Bundlers that use an HTML file as their own entry point
HTML_ENTRY_BUNDLER_MARKERS = ("vite",)

UI_LIBRARY_MARKERS = (
    "react",
    "react-dom",
    "react-scripts",
    "vue",
    "svelte",
    "@angular/core",
)

# Newest convention first
ENTRY_CANDIDATES = (
    "src/main.tsx",
    "src/main.jsx",
    "src/main.ts",
    "src/main.js",
    "src/index.tsx",
    "src/index.jsx",
    "src/index.ts",
    "src/index.js",
)

STATIC_ENTRY_CANDIDATES = (
    "index.html",
    "public/index.html",
    "src/index.html",
)

# Lockfile -> package manager, checked in order
LOCKFILE_PACKAGE_MANAGERS = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
    ("package-lock.json", "npm"),
)

INSTALL_COMMANDS = {
    "npm": StartCommand(program="npm", args=["install", "--no-audit", "--no-fund"]),
    "pnpm": StartCommand(program="npx", args=["--yes", "pnpm", "install"]),
    "yarn": StartCommand(program="yarn", args=["install"]),
    "bun": StartCommand(program="npx", args=["--yes", "bun", "install"]),
}

# Scripts tried in order when no framework-specific command applies
SCRIPT_PREFERENCE = ("dev", "start", "serve")

DEFAULT_PORT = 3000


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ProjectFacts:
    """Everything the rules need, read from the tree once."""
    tree: FileTree
    manifest_present: bool = False
    dependencies: Dict[str, str] = field(default_factory=dict)
    scripts: Dict[str, str] = field(default_factory=dict)
    html_entry: Optional[str] = None
    package_manager: str = "npm"

    @property
    def has_root_html(self) -> bool:
        return has_file(self.tree, "index.html")

    def has_dependency(self, name: str) -> bool:
        return name in self.dependencies


@dataclass(frozen=True)
class Classification:
    """Outcome of a single ladder rule."""
    family: ProjectFamily
    needs_full_toolchain: bool = False
    entry_point: Optional[str] = None
    framework: Optional[str] = None


Rule = Callable[[ProjectFacts], Optional[Classification]]


# =============================================================================
# FACT GATHERING
# =============================================================================

def read_manifest(tree: FileTree) -> Optional[Dict]:
    """
    Parse the package manifest.

    Returns:
        The manifest as a dict, or None when it is missing or malformed
    """
    raw = get_file(tree, MANIFEST_FILE)
    if raw is None:
        return None
    try:
        manifest = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("ignoring malformed manifest")
        return None
    if not isinstance(manifest, dict):
        return None
    return manifest


def string_map(value) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


def find_html_entry(tree: FileTree) -> Optional[str]:
    """Locate the HTML entry file among conventional locations, then anywhere."""
    for candidate in STATIC_ENTRY_CANDIDATES:
        if has_file(tree, candidate):
            return candidate
    for path, _ in iter_files(tree):
        if PurePosixPath(path).name == "index.html":
            return path
    return None


def detect_package_manager(tree: FileTree) -> str:
    for lockfile, manager in LOCKFILE_PACKAGE_MANAGERS:
        if has_file(tree, lockfile):
            return manager
    return "npm"


def resolve_entry_point(tree: FileTree) -> Optional[str]:
    """Return the first conventional source entry file present, else None."""
    for candidate in ENTRY_CANDIDATES:
        if has_file(tree, candidate):
            return candidate
    return None


def gather_facts(tree: FileTree) -> ProjectFacts:
    manifest = read_manifest(tree)
    dependencies: Dict[str, str] = {}
    scripts: Dict[str, str] = {}
    if manifest is not None:
        dependencies = {
            **string_map(manifest.get("dependencies")),
            **string_map(manifest.get("devDependencies")),
        }
        scripts = string_map(manifest.get("scripts"))
    return ProjectFacts(
        tree=tree,
        manifest_present=manifest is not None,
        dependencies=dependencies,
        scripts=scripts,
        html_entry=find_html_entry(tree),
        package_manager=detect_package_manager(tree),
    )


# =============================================================================
# RULE LADDER
# =============================================================================

def rule_no_manifest_with_html(facts: ProjectFacts) -> Optional[Classification]:
    """No manifest but an HTML entry exists: plain static assets."""
    if not facts.manifest_present and facts.html_entry:
        return Classification(family=ProjectFamily.STATIC_SITE)
    return None


def rule_no_scripts(facts: ProjectFacts) -> Optional[Classification]:
    """A manifest without run scripts is treated as plain assets."""
    if facts.manifest_present and not facts.scripts:
        return Classification(family=ProjectFamily.STATIC_SITE)
    return None


def rule_server_framework(facts: ProjectFacts) -> Optional[Classification]:
    if not facts.manifest_present:
        return None
    for marker in SERVER_FRAMEWORK_MARKERS:
        if facts.has_dependency(marker):
            return Classification(
                family=ProjectFamily.LEGACY_SPA_TOOLCHAIN,
                needs_full_toolchain=True,
                framework=marker,
            )
    return None


def uses_html_entry_bundler(facts: ProjectFacts) -> Optional[str]:
    """Return the HTML-entry bundler marker found in dependencies or scripts."""
    for marker in HTML_ENTRY_BUNDLER_MARKERS:
        if facts.has_dependency(marker):
            return marker
        pattern = re.compile(rf"\b{re.escape(marker)}\b")
        if any(pattern.search(command) for command in facts.scripts.values()):
            return marker
    return None


def rule_html_entry_bundler(facts: ProjectFacts) -> Optional[Classification]:
    if not facts.manifest_present:
        return None
    marker = uses_html_entry_bundler(facts)
    if marker and facts.has_root_html:
        return Classification(
            family=ProjectFamily.BUILD_TOOL_SPA,
            entry_point=resolve_entry_point(facts.tree),
            framework=marker,
        )
    return None


def rule_ui_library(facts: ProjectFacts) -> Optional[Classification]:
    if not facts.manifest_present:
        return None
    # react-scripts decides the start command, so it wins over react itself
    if facts.has_dependency("react-scripts"):
        marker = "react-scripts"
    else:
        marker = next((m for m in UI_LIBRARY_MARKERS if facts.has_dependency(m)), None)
    if marker is None:
        return None
    return Classification(
        family=ProjectFamily.COMPONENT_FRAMEWORK_SPA,
        entry_point=resolve_entry_point(facts.tree),
        framework=marker,
    )


def rule_scripted(facts: ProjectFacts) -> Optional[Classification]:
    if facts.manifest_present:
        return Classification(family=ProjectFamily.SCRIPTED)
    return None


def rule_fallback(facts: ProjectFacts) -> Optional[Classification]:
    if facts.html_entry:
        return Classification(family=ProjectFamily.STATIC_SITE)
    return Classification(family=ProjectFamily.UNKNOWN)


DEFAULT_RULES: Tuple[Rule, ...] = (
    rule_no_manifest_with_html,
    rule_no_scripts,
    rule_server_framework,
    rule_html_entry_bundler,
    rule_ui_library,
    rule_scripted,
    rule_fallback,
)


def classify(facts: ProjectFacts, rules: Sequence[Rule] = DEFAULT_RULES) -> Classification:
    """Run the ladder and return the first match."""
    for rule in rules:
        result = rule(facts)
        if result is not None:
            return result
    return Classification(family=ProjectFamily.UNKNOWN)


# =============================================================================
# COMMAND BUILDERS
# =============================================================================

def _script_command(facts: ProjectFacts) -> StartCommand:
    """Pick dev, start or serve, else the first declared script."""
    for name in SCRIPT_PREFERENCE:
        if name in facts.scripts:
            return StartCommand(program="npm", args=["run", name])
    if facts.scripts:
        return StartCommand(program="npm", args=["run", next(iter(facts.scripts))])
    return StartCommand(program="npm", args=["run", "dev"])


def _build_start_command(facts: ProjectFacts, result: Classification, port: int) -> StartCommand:
    """Build the command that starts the dev server."""
    framework = result.framework or ""

    if result.family == ProjectFamily.STATIC_SITE:
        directory = str(PurePosixPath(facts.html_entry).parent) if facts.html_entry else "."
        return StartCommand(program="npx", args=["--yes", "serve", "-l", str(port), directory])

    if framework == "next":
        return StartCommand(
            program="npx",
            args=["next", "dev", "--port", str(port), "--hostname", "0.0.0.0"],
            env={"WATCHPACK_POLLING": "true"},
        )
    if framework == "nuxt":
        return StartCommand(program="npx", args=["nuxi", "dev", "--port", str(port), "--host", "0.0.0.0"])
    if framework == "astro":
        return StartCommand(program="npx", args=["astro", "dev", "--port", str(port), "--host", "0.0.0.0"])

    if result.family == ProjectFamily.BUILD_TOOL_SPA:
        return StartCommand(program="npx", args=["vite", "--port", str(port), "--host", "0.0.0.0"])

    if framework == "react-scripts":
        return StartCommand(
            program="npx",
            args=["react-scripts", "start"],
            env={
                "PORT": str(port),
                "HOST": "0.0.0.0",
                "BROWSER": "none",           # Don't try to open browser
                "CI": "true",                # Non-interactive mode
                "CHOKIDAR_USEPOLLING": "true",  # File watching in Docker
                "WATCHPACK_POLLING": "true",    # Webpack 5 polling
            },
        )

    if result.family == ProjectFamily.UNKNOWN:
        return StartCommand(program="npm", args=["run", "dev"])

    command = _script_command(facts)
    if result.family == ProjectFamily.COMPONENT_FRAMEWORK_SPA:
        return command.model_copy(update={"env": {"BROWSER": "none", "CHOKIDAR_USEPOLLING": "true"}})
    return command


def _build_install_command(facts: ProjectFacts, result: Classification) -> Optional[StartCommand]:
    """Build the dependency installation command."""
    if result.family == ProjectFamily.STATIC_SITE or not facts.manifest_present:
        return None
    return INSTALL_COMMANDS[facts.package_manager]


# =============================================================================
# PROFILER
# =============================================================================

class ProjectProfiler:
    """Pure, deterministic classification of a file tree."""

    def __init__(self, port: int = DEFAULT_PORT, rules: Sequence[Rule] = DEFAULT_RULES):
        self.port = port
        self.rules = tuple(rules)

    def profile(self, tree: FileTree) -> ProjectProfile:
        """
        Classify a tree and choose how to run it.

        Args:
            tree: Root of the mounted file tree

        Returns:
            ProjectProfile with family, entry point and commands
        """
        facts = gather_facts(tree)
        result = classify(facts, self.rules)
        profile = ProjectProfile(
            family=result.family,
            needs_full_toolchain=result.needs_full_toolchain,
            entry_point=result.entry_point,
            start_command=_build_start_command(facts, result, self.port),
            install_command=_build_install_command(facts, result),
            package_manager=facts.package_manager,
            framework=result.framework,
        )
        logger.info(
            "profiled project",
            extra={"data": {
                "family": profile.family.value,
                "framework": profile.framework,
                "entry_point": profile.entry_point,
                "package_manager": profile.package_manager,
            }},
        )
        return profile


def profile_project(tree: FileTree, port: int = DEFAULT_PORT) -> ProjectProfile:
    """Classify a tree with the default rule ladder."""
    return ProjectProfiler(port=port).profile(tree)
