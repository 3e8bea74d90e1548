"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                    # everything except windowed tests
    CHIP8_DISPLAY=1 python -m pytest    # also open a real pygame window
"""

import os

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "display: tests that open a real pygame window (skipped unless CHIP8_DISPLAY is set)")


def pytest_collection_modifyitems(config, items):
    if os.environ.get("CHIP8_DISPLAY"):
        return
    skip = pytest.mark.skip(reason="set CHIP8_DISPLAY=1 to run windowed tests")
    for item in items:
        if "display" in item.keywords:
            item.add_marker(skip)
