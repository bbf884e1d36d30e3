"""
nucleus-orchestrator — package root

File: src/nucleus_orchestrator/__init__.py
Last updated: 2026-10-19

Purpose
- Bounded model reasoning loop (the Nucleus) and a resumable, ledgered DAG
  plan executor built around it.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Submodules are imported where they are used; this module only exports the version.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
