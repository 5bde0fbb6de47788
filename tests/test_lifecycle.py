"""Tests for deferred sandbox deletion."""

import asyncio
import threading
from unittest.mock import patch

import pytest

from arpack_backend.config import Settings
from arpack_backend.errors import InvalidSessionId
from arpack_backend.lifecycle import DeletionScheduler
from arpack_backend.security import issue_session_id
from arpack_backend.workspace import create_new_session


class TestDeletionScheduler:
    def test_deletes_after_delay(self, settings: Settings) -> None:
        ws = create_new_session(settings)

        async def scenario() -> None:
            scheduler = DeletionScheduler(settings)
            scheduler.schedule(ws.session_id, delay=0.05)
            assert scheduler.is_scheduled(ws.session_id)
            assert ws.root.exists()
            await asyncio.sleep(0.2)
            assert not scheduler.is_scheduled(ws.session_id)

        asyncio.run(scenario())
        assert not ws.root.exists()

    def test_deletion_runs_off_the_event_loop(self, settings: Settings) -> None:
        ws = create_new_session(settings)
        deleting_threads: list[int] = []

        def recording_delete(settings_arg: Settings, session_id: str) -> bool:
            deleting_threads.append(threading.get_ident())
            return True

        async def scenario() -> int:
            scheduler = DeletionScheduler(settings)
            scheduler.schedule(ws.session_id, delay=0)
            await asyncio.sleep(0.2)
            return threading.get_ident()

        with patch("arpack_backend.lifecycle.delete_session", side_effect=recording_delete):
            loop_thread = asyncio.run(scenario())

        assert len(deleting_threads) == 1
        assert deleting_threads[0] != loop_thread

    def test_cancel_keeps_sandbox(self, settings: Settings) -> None:
        ws = create_new_session(settings)

        async def scenario() -> None:
            scheduler = DeletionScheduler(settings)
            scheduler.schedule(ws.session_id, delay=0.05)
            assert scheduler.cancel(ws.session_id) is True
            assert scheduler.cancel(ws.session_id) is False
            await asyncio.sleep(0.2)

        asyncio.run(scenario())
        assert ws.root.exists()

    def test_reschedule_replaces_timer(self, settings: Settings) -> None:
        ws = create_new_session(settings)

        async def scenario() -> None:
            scheduler = DeletionScheduler(settings)
            scheduler.schedule(ws.session_id, delay=0.05)
            scheduler.schedule(ws.session_id, delay=10)
            assert scheduler.pending() == [ws.session_id]
            await asyncio.sleep(0.2)
            assert ws.root.exists()
            scheduler.cancel(ws.session_id)

        asyncio.run(scenario())

    def test_missing_sandbox_is_not_an_error(self, settings: Settings) -> None:
        async def scenario() -> None:
            scheduler = DeletionScheduler(settings)
            scheduler.schedule(issue_session_id(), delay=0)
            await asyncio.sleep(0.05)
            assert scheduler.pending() == []

        asyncio.run(scenario())

    def test_shutdown_flushes_pending(self, settings: Settings) -> None:
        first = create_new_session(settings)
        second = create_new_session(settings)

        async def scenario() -> int:
            scheduler = DeletionScheduler(settings)
            scheduler.schedule(first.session_id, delay=60)
            scheduler.schedule(second.session_id, delay=60)
            flushed = scheduler.shutdown()
            assert scheduler.pending() == []
            return flushed

        assert asyncio.run(scenario()) == 2
        assert not first.root.exists()
        assert not second.root.exists()

    def test_rejects_malformed_id(self, settings: Settings) -> None:
        async def scenario() -> None:
            DeletionScheduler(settings).schedule("../" * 10)

        with pytest.raises(InvalidSessionId):
            asyncio.run(scenario())
