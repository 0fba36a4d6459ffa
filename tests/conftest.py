"""Pytest configuration and fixtures for the tabwright test suite.

This module provides shared configuration and fixtures used across the entire
test suite. Every test drives the in-process ``MemoryHost``, so no real
browser is needed.

Configuration:
    - Adds src/ directory to Python path for test imports
    - Zeroes the capture pacing delays so screenshot tests run fast
    - Points the downloads directory at a per-test temporary directory

Path Setup:
    The src directory is added to sys.path to enable imports like:
    ``from tabwright.browser.session import BrowserSession``
"""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

src_path = Path(__file__).parent.parent / 'src'
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from tabwright.browser.session import BrowserSession  # noqa: E402
from tabwright.host.memory import MemoryHost  # noqa: E402


@pytest.fixture(autouse=True)
def fast_capture_env(monkeypatch, tmp_path):
    """Remove capture pacing and keep downloads inside the test's tmp dir."""
    monkeypatch.setenv('TABWRIGHT_CAPTURE_INTERVAL_MS', '0')
    monkeypatch.setenv('TABWRIGHT_SEGMENT_SETTLE_DELAY_MS', '0')
    monkeypatch.setenv('TABWRIGHT_DOWNLOADS_DIR', str(tmp_path / 'downloads'))


@pytest.fixture
def host(tmp_path):
    """A fresh in-process host with a small viewport."""
    return MemoryHost(viewport_width=800, viewport_height=600, downloads_dir=tmp_path / 'downloads')


@pytest_asyncio.fixture
async def session(host):
    """A started session over ``host``, stopped on teardown."""
    browser_session = BrowserSession(host=host)
    await browser_session.start()
    yield browser_session
    await browser_session.stop()


@pytest.fixture
def open_page(host, session):
    """Factory that routes ``html`` at ``url`` and opens a loaded page on it.

    Usage:
        page = await open_page('<button>Go</button>')
    """

    async def factory(html: str = '', url: str = 'https://example.test/', **route_options):
        host.route(url, html, **route_options)
        page = await session.new_page(url)
        await page.wait_for_load_state('load')
        return page

    return factory
