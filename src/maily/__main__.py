# =============================================================================
# maily Entry Point for `python -m maily`
# =============================================================================
# This module allows maily to be run as a Python module:
#
#   python -m maily sync
#
# The background daemon relaunches itself this way.
# =============================================================================

import sys

from maily.app import main

if __name__ == "__main__":
    sys.exit(main())
