"""
Unit tests for tiered_approvals/dependencies.py
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI

from tiered_approvals.dependencies import get_level_manager, init_services
from tiered_approvals.services.change_feed import UPDATE, LevelChange
from tiered_approvals.services.level_backend import SqlLevelBackend

CLIENT_ID = "c0000000-0000-0000-0000-000000000002"


@pytest.fixture
def app():
    with patch("tiered_approvals.dependencies.get_session_factory", return_value=MagicMock()):
        application = FastAPI()
        init_services(application)
        yield application


def test_init_services_shares_one_feed(app):
    manager = app.state.level_manager

    assert isinstance(manager.store.backend, SqlLevelBackend)
    assert manager.store.feed is app.state.change_feed


@pytest.mark.asyncio
async def test_store_drops_view_on_database_notification(app):
    store = app.state.level_manager.store
    store._set_view(CLIENT_ID, [])

    delivered = await app.state.change_feed.publish(
        LevelChange(UPDATE, CLIENT_ID, "l1", remote=True)
    )

    assert delivered == 1
    assert not store.is_loaded(CLIENT_ID)


def test_get_level_manager_reuses_app_state(app):
    request = MagicMock()
    request.app = app

    assert get_level_manager(request) is app.state.level_manager
