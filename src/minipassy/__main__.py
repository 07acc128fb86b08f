"""Allow ``python -m minipassy``."""

from minipassy.cli import main

main()
