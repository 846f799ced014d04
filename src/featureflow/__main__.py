import sys

from featureflow.cli import main

sys.exit(main())
