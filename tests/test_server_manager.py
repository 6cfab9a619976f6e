import asyncio
import json

import pytest
from fakes import FakeSessionFactory, python_builder

from mcp_create_server import Language, ServerManager, ServerNotFoundError, TransportError

CODE = "print('server')\n"


async def _wait_until(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def _error_of(result):
    return json.loads(result.content[0].text)["error"]


@pytest.mark.asyncio
async def test_create_registers_server(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        server_id = await manager.create(CODE, "python")

        assert manager.list_servers() == [server_id]
        assert factory.sessions[server_id].is_open
        assert await manager.get_server_code(server_id) == CODE
        info = manager.get_server_info(server_id)
        assert info.language is Language.PYTHON
        assert info.source_path == tmp_path / "servers" / server_id / "server.py"
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_failed_start_leaves_nothing_behind(tmp_path):
    manager = ServerManager(python_builder(tmp_path), FakeSessionFactory(fail_start=True))
    try:
        with pytest.raises(TransportError):
            await manager.create(CODE, Language.PYTHON)

        assert manager.list_servers() == []
        assert list((tmp_path / "servers").iterdir()) == []
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_unsupported_language(tmp_path):
    manager = ServerManager(python_builder(tmp_path), FakeSessionFactory())
    with pytest.raises(ValueError, match="Unsupported language"):
        await manager.create(CODE, "cobol")


@pytest.mark.asyncio
async def test_delete_closes_and_removes(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        server_id = await manager.create(CODE, "python")
        sandbox = tmp_path / "servers" / server_id

        result = await manager.delete(server_id)

        assert result == {"success": True, "message": f"Server {server_id} deleted"}
        assert factory.sessions[server_id].close_count == 1
        assert manager.list_servers() == []
        assert not sandbox.exists()
        with pytest.raises(ServerNotFoundError):
            await manager.delete(server_id)
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_unknown_ids_raise_not_found(tmp_path):
    manager = ServerManager(python_builder(tmp_path), FakeSessionFactory())
    with pytest.raises(ServerNotFoundError):
        await manager.get_tools("missing")
    with pytest.raises(ServerNotFoundError):
        await manager.call_tool("missing", "echo", {})
    with pytest.raises(ServerNotFoundError):
        await manager.update("missing", CODE)
    with pytest.raises(ServerNotFoundError):
        await manager.get_server_code("missing")


@pytest.mark.asyncio
async def test_call_tool_unknown_tool_is_reported_in_band(tmp_path):
    manager = ServerManager(python_builder(tmp_path), FakeSessionFactory())
    try:
        server_id = await manager.create(CODE, "python")

        result = await manager.call_tool(server_id, "nope", {})

        assert result.isError
        assert _error_of(result) == {"code": -32601, "message": "Tool not found: nope"}
        assert result.structuredContent == {
            "error": {"code": -32601, "message": "Tool not found: nope"}
        }
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_call_tool_invalid_arguments_never_reach_child(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        server_id = await manager.create(CODE, "python")

        result = await manager.call_tool(server_id, "echo", {})

        assert result.isError
        error = _error_of(result)
        assert error["code"] == -32602
        assert error["message"] == (
            "Invalid parameters: Missing required parameter: 'message'"
        )
        assert factory.sessions[server_id].calls == []
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_call_tool_forwards_valid_calls(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        server_id = await manager.create(CODE, "python")

        result = await manager.call_tool(server_id, "echo", {"message": "hi"})

        assert not result.isError
        assert result.content[0].text == "Echo: hi"
        assert factory.sessions[server_id].calls == [("echo", {"message": "hi"})]
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_get_tools_reflects_current_child_tools(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        server_id = await manager.create(CODE, "python")
        assert [tool.name for tool in await manager.get_tools(server_id)] == ["echo"]

        factory.sessions[server_id].tools = []
        assert await manager.get_tools(server_id) == []
        result = await manager.call_tool(server_id, "echo", {"message": "x"})
        assert _error_of(result)["code"] == -32601
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_update_replaces_server_with_new_id(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        old_id = await manager.create(CODE, "python")

        new_id = await manager.update(old_id, "print('v2')\n")

        assert new_id != old_id
        assert manager.list_servers() == [new_id]
        assert factory.sessions[old_id].close_count == 1
        assert not (tmp_path / "servers" / old_id).exists()
        assert await manager.get_server_code(new_id) == "print('v2')\n"
        assert manager.get_server_info(new_id).language is Language.PYTHON
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_autonomous_close_removes_entry(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        server_id = await manager.create(CODE, "python")
        sandbox = tmp_path / "servers" / server_id

        factory.sessions[server_id].crash(RuntimeError("child exited"))

        assert await _wait_until(lambda: manager.list_servers() == [])
        assert await _wait_until(lambda: not sandbox.exists())
        with pytest.raises(ServerNotFoundError):
            await manager.get_tools(server_id)
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_concurrent_deletes_succeed_once(tmp_path):
    manager = ServerManager(python_builder(tmp_path), FakeSessionFactory())
    try:
        server_id = await manager.create(CODE, "python")

        results = await asyncio.gather(
            manager.delete(server_id),
            manager.delete(server_id),
            return_exceptions=True,
        )

        successes = [item for item in results if isinstance(item, dict)]
        failures = [item for item in results if isinstance(item, ServerNotFoundError)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert manager.list_servers() == []
    finally:
        await manager.close_all()


@pytest.mark.asyncio
async def test_close_all_closes_every_session(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    first = await manager.create(CODE, "python")
    second = await manager.create(CODE, "python")

    await manager.close_all()

    assert manager.list_servers() == []
    assert factory.sessions[first].close_count == 1
    assert factory.sessions[second].close_count == 1
    assert list((tmp_path / "servers").iterdir()) == []

    for server_id in (first, second):
        with pytest.raises(ServerNotFoundError):
            await manager.get_tools(server_id)
        with pytest.raises(ServerNotFoundError):
            await manager.call_tool(server_id, "echo", {"message": "late"})
        with pytest.raises(ServerNotFoundError):
            await manager.update(server_id, CODE)
        with pytest.raises(ServerNotFoundError):
            await manager.delete(server_id)
        with pytest.raises(ServerNotFoundError):
            await manager.get_server_code(server_id)
    assert factory.sessions[first].calls == []


@pytest.mark.asyncio
async def test_shutdown_does_not_wait(tmp_path):
    factory = FakeSessionFactory()
    manager = ServerManager(python_builder(tmp_path), factory)
    try:
        server_id = await manager.create(CODE, "python")

        manager.shutdown()

        assert manager.list_servers() == []
        assert factory.sessions[server_id].close_requested
        assert factory.sessions[server_id].close_count == 0
    finally:
        await manager.close_all()
