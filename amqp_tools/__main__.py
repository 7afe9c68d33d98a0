import sys

from amqp_tools.app.main import main

sys.exit(main())
