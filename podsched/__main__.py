import sys

from podsched.cli import main

sys.exit(main())
