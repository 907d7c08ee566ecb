"""Allow ``python -m flite`` from an installed package or a source checkout."""

from __future__ import annotations

from flite.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
