"""
__init__.py for the web_batch_screenshot package.

This file marks the 'web_batch_screenshot' directory as a Python package,
allowing imports from modules like 'web_batch_screenshot.main', and lets
`python -m web_batch_screenshot.main` run the CLI.

Everything lives in 'main.py': the path sanitizer, the error log, the
Playwright capture and the worker pool that ties them together.
"""

__all__ = []
