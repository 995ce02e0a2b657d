from __future__ import annotations

import pytest

from fakes import FakeDriver, FakeProxy


@pytest.fixture
def proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
def driver(proxy: FakeProxy) -> FakeDriver:
    return FakeDriver(proxy)
