"""
CLI tools for tapgate.

- tapctl: verification, interception, setup/remove and status
"""

from .tapctl import main

__all__ = ['main']
