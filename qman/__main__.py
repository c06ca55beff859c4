"""Entry point for ``python -m qman``."""

from qman.cli import main

raise SystemExit(main())
