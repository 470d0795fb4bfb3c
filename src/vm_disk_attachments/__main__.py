"""Allow running as ``python -m vm_disk_attachments``."""
import sys

from .cli import main

sys.exit(main())
