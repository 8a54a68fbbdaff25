import pytest
from PySide6.QtCore import QCoreApplication


@pytest.fixture(scope="session", autouse=True)
def qapp():
    """Qt needs an application object for timers and queued connections."""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app
