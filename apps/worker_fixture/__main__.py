"""Entry point for the worker fixture module."""

from __future__ import annotations

from apps.worker_fixture.main import main

if __name__ == "__main__":
    raise SystemExit(main())
