import pytest

from builders import FakeClock


@pytest.fixture
def clock():
    return FakeClock()
