"""
Command-line interface for System Updater.
"""

# SPDX-License-Identifier: GPL-3.0-or-later
