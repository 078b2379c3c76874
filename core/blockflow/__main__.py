import sys

from blockflow.cli import main

sys.exit(main())
