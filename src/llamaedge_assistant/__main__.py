"""Allow ``python -m llamaedge_assistant``."""

import sys

from .cli import main

sys.exit(main())
