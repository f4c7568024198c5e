import sys

from ata.main import main

sys.exit(main())
