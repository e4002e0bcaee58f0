"""Module entry point for ``python -m bundle_ingest``."""

from bundle_ingest.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
