"""Allow ``python -m conduit``."""

import sys

from conduit.cli.app import main

sys.exit(main())
