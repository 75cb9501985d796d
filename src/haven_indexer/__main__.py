"""Allow ``python -m haven_indexer``."""

from haven_indexer.cli import main

raise SystemExit(main())
