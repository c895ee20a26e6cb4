import sys

from dvr_manager.main import main

sys.exit(main())
