import sys

from kbudget_deploy.cli import main

sys.exit(main())
