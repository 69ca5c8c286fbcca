"""
App-wide service objects, built once per process and stored on app.state.

Tests replace them with ``app.dependency_overrides[get_level_manager]``.
"""

from fastapi import FastAPI, Request

from tiered_approvals.database import get_session_factory
from tiered_approvals.services.change_feed import ChangeFeed
from tiered_approvals.services.level_backend import SqlLevelBackend
from tiered_approvals.services.level_store import ApprovalLevelStore
from tiered_approvals.services.lifecycle_manager import LevelLifecycleManager


def build_level_manager(feed: ChangeFeed) -> LevelLifecycleManager:
    store = ApprovalLevelStore(SqlLevelBackend(get_session_factory()), feed)
    store.track_remote_changes()
    return LevelLifecycleManager(store)


def init_services(app: FastAPI) -> LevelLifecycleManager:
    app.state.change_feed = ChangeFeed()
    app.state.level_manager = build_level_manager(app.state.change_feed)
    return app.state.level_manager


def get_level_manager(request: Request) -> LevelLifecycleManager:
    manager = getattr(request.app.state, "level_manager", None)
    if manager is None:
        manager = init_services(request.app)
    return manager
