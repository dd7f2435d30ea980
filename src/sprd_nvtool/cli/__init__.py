"""
SPRD NV Tool Command-Line Interface
===================================

This package provides command-line tools for the SPRD NV tool:

- **sprdlink**: Boot-mode device tool (read / write NV, dump flash)
- **sprdnv**: Offline NV image editor

Each tool is implemented as a Click-based CLI application with
comprehensive help and error reporting.
"""

__all__ = ["sprdlink", "sprdnv"]
