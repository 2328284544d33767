import sys

from flightctl.cli import main

sys.exit(main())
