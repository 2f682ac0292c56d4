import asyncio

import aiosqlite
import pytest

from hobbes.exceptions import SessionNotFoundError
from hobbes.models import (
    ActiveContext,
    Message,
    ToolCallContent,
    ToolCallRecord,
    ToolCallResult,
    ToolCallState,
    ToolCallStatus,
)
from hobbes.session import SessionManager


@pytest.mark.asyncio
async def test_session_manager_uses_db_path_override(tmp_path):
    db_path = tmp_path / "custom-sessions.db"
    manager = SessionManager(db_path=db_path)
    try:
        await manager.create_session(name="alpha")
        assert db_path.exists()
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_save_load_and_select_session_round_trip(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        created = await manager.create_session(name="alpha", active_context=ActiveContext(extra={"project": "hobbes"}))
        call = ToolCallState(server_name="weather_server", tool_name="weather", arguments={"loc": "NYC"})
        call.resolve(ToolCallStatus.COMPLETED, '{"temperature": 72}')
        created.messages.append(Message.user("weather?"))
        created.messages.append(Message.agent(ToolCallContent(call)))
        created.tool_call_history.append(
            ToolCallRecord(call=call, result=ToolCallResult(ToolCallStatus.COMPLETED, call.response))
        )
        await manager.save_session(created)

        loaded = await manager.load_session(created.id)
        assert loaded is not None
        assert loaded.name == "alpha"
        assert loaded.active_context.extra["project"] == "hobbes"
        assert len(loaded.messages) == 2
        assert loaded.messages[1].tool_call.status is ToolCallStatus.COMPLETED
        assert loaded.tool_call_history[0].call.execution_id == call.execution_id

        selected_by_id = await manager.select_session(created.id)
        assert selected_by_id is not None and selected_by_id.id == created.id

        selected_by_name = await manager.select_session("alpha")
        assert selected_by_name is not None and selected_by_name.id == created.id

        selected_by_index = await manager.select_session("#1")
        assert selected_by_index is not None and selected_by_index.id == created.id
        assert await manager.select_session("#5") is None
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_get_or_create_reuses_named_session(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        first = await manager.get_or_create_session("default")
        second = await manager.get_or_create_session("default")
        assert first.id == second.id
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_list_sessions_orders_by_last_update(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        first = await manager.create_session(name="one")
        second = await manager.create_session(name="two")

        first.messages.append(Message.user("most recent"))
        first.updated_at = "9999-01-01T00:00:00+00:00"
        await manager.save(first)

        sessions = await manager.list_sessions(limit=10)
        assert [s.id for s in sessions] == [first.id, second.id]
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_rename_session(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        session = await manager.create_session(name="old")
        renamed = await manager.rename_session(session.id, "new")

        assert renamed.name == "new"
        assert (await manager.load_session_by_name("new")).id == session.id
        with pytest.raises(SessionNotFoundError):
            await manager.rename_session("missing", "x")
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_delete_session_returns_status(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        session = await manager.create_session(name="to-delete")
        assert await manager.delete_session(session.id) is True
        assert await manager.delete_session(session.id) is False
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_concurrent_first_use_opens_one_connection(tmp_path, monkeypatch):
    connects: list[str] = []
    real_connect = aiosqlite.connect

    def counting_connect(database, *args, **kwargs):
        connects.append(str(database))
        return real_connect(database, *args, **kwargs)

    monkeypatch.setattr(aiosqlite, "connect", counting_connect)
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        created = await asyncio.gather(*(manager.create_session(name=f"s{i}") for i in range(3)))
        listed = await manager.list_sessions(limit=10)
    finally:
        await manager.close()

    assert len(connects) == 1
    assert {s.id for s in listed} == {s.id for s in created}
