from datetime import datetime, timezone

import pytest

from builders import FakeClock, FakeDevicesCollection


@pytest.fixture
def clock():
    # aligned to a minute boundary so rate windows start with the test
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def devices_collection():
    return FakeDevicesCollection()
