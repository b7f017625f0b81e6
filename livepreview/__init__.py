"""
Live preview environments for repositories under active editing.

Components:
- profiler: classify a project and choose install/start commands
- overlay: keep pending edits on top of a fetched baseline
- bundler: fallback setup for the secondary in-process bundler
- orchestrator: lifecycle state machine, one sandbox per view
- registry: controllers keyed by view id
"""

__version__ = "0.1.0"
