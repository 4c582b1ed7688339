"""
Melody Recovery — template-driven machine state backup and restore.

Capture registry keys, files, and application settings into portable
state documents, then replay them onto any machine. Shared settings
travel everywhere; machine-specific settings stay with their machine.
"""

import os

__version__ = "0.1.0"
__author__ = "Windows Melody Recovery"

MELODY_HOME = os.environ.get("MELODY_HOME", "~/.melody")
