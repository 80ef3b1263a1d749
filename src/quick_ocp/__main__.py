import sys

from .handlers import main

sys.exit(main())
