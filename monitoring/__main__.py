"""Allow ``python -m monitoring``."""

import sys

from monitoring.main import main

sys.exit(main())
