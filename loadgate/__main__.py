"""Allow ``python -m loadgate``."""

from loadgate.cli import main

raise SystemExit(main())
