"""Module entrypoint for `python -m laz2hillshade`."""

from __future__ import annotations

from laz2hillshade.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
