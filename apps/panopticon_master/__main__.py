"""Entry point for the Panopticon master module."""

from __future__ import annotations

from apps.panopticon_master.main import main

if __name__ == "__main__":
    raise SystemExit(main())
