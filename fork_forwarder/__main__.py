import sys

from fork_forwarder.main import main

sys.exit(main())
