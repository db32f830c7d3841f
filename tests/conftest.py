"""Pytest configuration and fixtures."""

import sys
import time
from pathlib import Path

import pytest
from PyQt6.QtCore import QCoreApplication, QEventLoop

# Add project root to sys.path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(scope="session")
def qapp():
    """One QCoreApplication for the whole run; Qt allows only one per process."""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def pump(qapp):
    """Spin the Qt event loop until `predicate()` holds or `timeout` seconds pass."""
    def _pump(predicate=lambda: False, timeout: float = 3.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            QCoreApplication.processEvents(QEventLoop.ProcessEventsFlag.AllEvents, 20)
            if predicate():
                return True
            time.sleep(0.005)
        return predicate()
    return _pump
