"""Allow running hermbuild as a module: python -m hermbuild."""

import sys

from hermbuild.cli import main

if __name__ == "__main__":
    sys.exit(main())
