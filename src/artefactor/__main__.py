"""Allow ``python -m artefactor``."""

import sys

from artefactor.cli import main

sys.exit(main())
