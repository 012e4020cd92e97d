import sys

from llamadesk.main import main

sys.exit(main())
