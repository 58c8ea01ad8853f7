import json

import pytest

from tests.helpers.fakes import FakeConnector, descriptor, remote_failure, text_result
from toolexec_common.errors import RemoteInvocationError, ServiceUnavailable, UnknownCapability
from toolexec_mcp.audit import CallAuditor
from toolexec_mcp.broker import ConnectionBroker
from toolexec_mcp.constants import MCP_RESULTS_DIR
from toolexec_mcp.proxies import CapabilityProxy, build_proxies, result_filename

BIG = {"rows": [{"id": i, "name": f"row-{i}"} for i in range(100)]}


def _tools():
    return {
        "ping": lambda a: text_result("pong"),
        "dump": lambda a: BIG,
        "resolve-library-id": lambda a: text_result(a.get("libraryName", "")),
        "explode": remote_failure("bad input"),
    }


@pytest.fixture
def connector():
    return FakeConnector(_tools())


@pytest.fixture
def proxy(broker, workspace):
    return CapabilityProxy("alpha", broker, workspace)


@pytest.mark.asyncio
async def test_small_result_is_returned_as_is_and_audited(proxy, broker):
    out = await proxy.ping({"x": 1})

    assert out == text_result("pong")
    (entry,) = broker.auditor.recent(10)
    assert entry.service == "alpha"
    assert entry.capability == "ping"
    assert entry.arguments == {"x": 1}
    assert entry.error is None
    assert entry.duration_ms >= 0


@pytest.mark.asyncio
async def test_keyword_arguments_are_merged(proxy, connector):
    await proxy.ping({"a": 1}, b=2)
    assert connector.connections[0].calls == [("ping", {"a": 1, "b": 2})]


@pytest.mark.asyncio
async def test_large_result_is_saved_and_round_trips(proxy, workspace):
    ref = await proxy.dump()

    assert set(ref) == {"savedTo", "size", "preview", "hint"}
    assert ref["savedTo"].startswith(f"{MCP_RESULTS_DIR}/")
    assert ref["size"] == len(json.dumps(BIG, ensure_ascii=False))
    assert ref["preview"].endswith("...")
    assert ref["savedTo"] in ref["hint"]

    assert await workspace.read_json(ref["savedTo"]) == BIG


@pytest.mark.asyncio
async def test_persistence_failure_downgrades_to_truncated_warning(proxy, workspace, monkeypatch):
    async def broken_write_json(path, data):
        raise OSError("disk full")

    monkeypatch.setattr(workspace, "write_json", broken_write_json)

    out = await proxy.dump()

    assert out["warning"].startswith("Result too large to auto-save")
    assert out["size"] == len(json.dumps(BIG, ensure_ascii=False))
    assert len(out["preview"]) == 1000


@pytest.mark.asyncio
async def test_snake_case_attribute_reaches_kebab_case_tool(proxy, connector):
    out = await proxy.resolve_library_id({"libraryName": "react"})
    assert out == text_result("react")
    assert connector.connections[0].calls[0][0] == "resolve-library-id"


@pytest.mark.asyncio
async def test_item_access_uses_exact_name(proxy):
    out = await proxy["resolve-library-id"]({"libraryName": "vue"})
    assert out == text_result("vue")


@pytest.mark.asyncio
async def test_unknown_capability_is_rejected_before_any_call(proxy, connector, broker):
    with pytest.raises(UnknownCapability, match="unknown capability 'nope' for the alpha MCP"):
        await proxy.nope()
    assert connector.connections[0].calls == []
    assert broker.auditor.recent(10) == []


@pytest.mark.asyncio
async def test_remote_error_is_audited_then_reraised(proxy, broker):
    with pytest.raises(RemoteInvocationError, match="bad input"):
        await proxy.explode({"q": 1})

    (entry,) = broker.auditor.recent(10)
    assert entry.capability == "explode"
    assert entry.error == "bad input"


@pytest.mark.asyncio
async def test_unreachable_service_raises_service_unavailable(workspace):
    b = ConnectionBroker([descriptor("alpha")], connector=FakeConnector(failing={"alpha"}), auditor=CallAuditor())
    proxy = CapabilityProxy("alpha", b, workspace)

    with pytest.raises(ServiceUnavailable, match="alpha MCP is not available"):
        await proxy.ping()
    assert b.auditor.recent(10) == []


@pytest.mark.asyncio
async def test_last_used_strictly_increases_per_successful_call(workspace):
    b = ConnectionBroker([descriptor("alpha")], connector=FakeConnector(_tools()), clock=lambda: 5.0)
    proxy = CapabilityProxy("alpha", b, workspace)

    stamps = []
    for _ in range(4):
        await proxy.ping()
        stamps.append(b.state("alpha").last_used_at)

    assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))
    await b.aclose()


@pytest.mark.asyncio
async def test_handlers_are_cached_and_private_names_are_not_proxied(proxy):
    assert proxy.ping is proxy.ping
    assert proxy["ping"] is proxy.ping
    with pytest.raises(AttributeError):
        proxy._secret


@pytest.mark.asyncio
async def test_dir_lists_declared_tools_once_connected(proxy, broker):
    assert dir(proxy) == []
    await broker.get_connection("alpha")
    assert dir(proxy) == sorted(_tools())


@pytest.mark.asyncio
async def test_build_proxies_one_per_service(broker, workspace):
    proxies = build_proxies(broker, workspace)
    assert sorted(proxies) == ["alpha", "beta"]
    assert repr(proxies["beta"]) == "<mcp service beta>"


def test_result_filename_is_filesystem_safe():
    name = result_filename("my svc", "get/docs:v1")
    assert name.endswith(".json")
    assert "/" not in name and ":" not in name and " " not in name
    assert "-my_svc-get_docs_v1-" in name
