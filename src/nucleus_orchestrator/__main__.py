"""Module entrypoint for ``python -m nucleus_orchestrator``."""

from __future__ import annotations

from nucleus_orchestrator.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
