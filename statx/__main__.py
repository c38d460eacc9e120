"""Allow running as ``python -m statx``."""

from . import main

main()
