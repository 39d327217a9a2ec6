"""
jetswitch - Jetson Linux kernel version switching with backup and revert
"""

__version__ = "0.1.0"
