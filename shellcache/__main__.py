"""Allow running as ``python -m shellcache``."""

from . import main

main()
