"""
__init__.py for the tests directory.

This file marks the 'tests' folder as a Python package so pytest can import
the test modules with their package-relative names. Shared fixtures would go
here; for now every fixture lives next to the tests that use it.
"""

__all__ = []
