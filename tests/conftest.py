from datetime import datetime

import pytest

from fakes import NOW, FakeRepository


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def now() -> datetime:
    return NOW
