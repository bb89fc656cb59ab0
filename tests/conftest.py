from unittest import mock

import pytest
from pytest_mock import MockerFixture

from fakes import FakeUnitOfWork


@pytest.fixture
def uow() -> FakeUnitOfWork:
    return FakeUnitOfWork()


@pytest.fixture(autouse=True)
def mock_redis(mocker: MockerFixture) -> mock.AsyncMock:
    """Keep Redis out of every test; handlers publish through this mock."""
    client = mock.AsyncMock()
    mocker.patch("nursery.allocation.service_layer.handlers.redis", client)
    return client


@pytest.fixture(autouse=True)
def mock_ats_cache(mocker: MockerFixture) -> mock.AsyncMock:
    cache = mock.AsyncMock()
    cache.get.return_value = None
    mocker.patch("nursery.allocation.service_layer.handlers.ats_cache", cache)
    mocker.patch("nursery.allocation.service_layer.actions.ats_cache", cache)
    return cache
