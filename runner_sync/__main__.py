"""Allow ``python -m runner_sync``."""

import sys

from runner_sync.cli.main import main

sys.exit(main())
