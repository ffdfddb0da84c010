"""
System Updater - Modular Package

Detects installed versions of OS packages, language toolchains and standalone
applications, compares them with the newest upstream release and runs the
matching update action when one is due.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

__version__ = "1.0.0"
__author__ = "System Updater contributors"
