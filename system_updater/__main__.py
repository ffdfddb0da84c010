"""
Allow running the updater with ``python -m system_updater``.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from .cli.main import main

if __name__ == "__main__":
    main()
