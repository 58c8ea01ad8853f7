import asyncio
import json
import time

import pytest

from tests.helpers.fakes import FakeConnector, descriptor, text_result
from toolexec_mcp.broker import ConnectionBroker
from toolexec_mcp.runtime import ScriptEngine, compile_script, summarise_logs


class Halt(BaseException):
    pass


def _halt(arguments):
    raise Halt("halted by tool")


@pytest.fixture
def connector():
    return FakeConnector(
        {
            "echo": lambda a: text_result(a["text"]),
            "big": lambda a: {"blob": "x" * 2000},
            "halt": _halt,
        }
    )


@pytest.fixture
def engine(broker, workspace):
    return ScriptEngine(broker, workspace)


async def _cancel_overdue(engine: ScriptEngine) -> None:
    for task in list(engine._overdue):
        task.cancel()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_console_output_keeps_call_order(engine):
    res = await engine.execute("console.log('a'); console.log('b')")
    assert res.logs == ["a", "b"]
    assert res.error is None
    assert res.to_dict() == {"logs": ["a", "b"]}


@pytest.mark.asyncio
async def test_return_value_becomes_single_returned_record(engine):
    res = await engine.execute("return 42")
    assert res.logs == [{"returned": 42}]
    assert res.error is None


@pytest.mark.asyncio
async def test_uncaught_exception_reports_message_and_stack(engine):
    res = await engine.execute("console.log('before')\nraise Exception('boom')")
    assert res.error == "boom"
    assert res.stack and "<script>" in res.stack
    assert res.logs == ["before"]
    assert not any(isinstance(x, dict) and "returned" in x for x in res.logs)


@pytest.mark.asyncio
async def test_timeout_wins_race_and_keeps_partial_logs(engine):
    t0 = time.perf_counter()
    res = await engine.execute("console.log('start')\nawait sleep(5)\nconsole.log('never')", 100)
    elapsed = time.perf_counter() - t0

    assert elapsed < 2
    assert "timed out" in res.error
    assert res.error == "Execution timed out after 100ms"
    assert res.logs == ["start"]
    # the script is not cancelled; it keeps running in the background
    assert engine.overdue == 1
    await _cancel_overdue(engine)


@pytest.mark.asyncio
async def test_large_log_output_is_summarised_with_true_totals(engine):
    res = await engine.execute("for i in range(200):\n    console.log('x' * 20)")

    expected = json.dumps(["x" * 20] * 200, ensure_ascii=False)
    (summary,) = res.logs
    assert summary["summary"] is True
    assert summary["totalLogs"] == 200
    assert summary["totalChars"] == len(expected)
    assert summary["limit"] == 1500
    assert summary["preview"] == ["x" * 20] * 3


def test_summarise_logs_leaves_small_output_alone():
    logs = ["a", {"level": "info", "data": [1]}]
    assert summarise_logs(logs) is logs


@pytest.mark.asyncio
async def test_leveled_console_and_print(engine):
    res = await engine.execute("print('p', 1)\nconsole.info('i')\nconsole.warn('w', 2)\nconsole.error('e')")
    assert res.logs == [
        ["p", 1],
        {"level": "info", "data": ["i"]},
        {"level": "warn", "data": ["w", 2]},
        {"level": "error", "data": ["e"]},
    ]


@pytest.mark.asyncio
async def test_services_are_bound_by_name(engine):
    res = await engine.execute("r = await alpha.echo({'text': 'hi'})\nreturn r['content'][0]['text']")
    assert res.error is None
    assert res.logs == [{"returned": "hi"}]


@pytest.mark.asyncio
async def test_parallel_calls_with_gather(engine):
    code = (
        "a, b = await gather(alpha.echo(text='1'), beta.echo(text='2'))\n"
        "return [a['content'][0]['text'], b['content'][0]['text']]"
    )
    res = await engine.execute(code)
    assert res.logs == [{"returned": ["1", "2"]}]


@pytest.mark.asyncio
async def test_oversized_capability_result_is_readable_from_workspace(engine):
    code = (
        "ref = await alpha.big()\n"
        "data = await workspace.read_json(ref['savedTo'])\n"
        "return len(data['blob'])"
    )
    res = await engine.execute(code)
    assert res.error is None
    assert res.logs == [{"returned": 2000}]


@pytest.mark.asyncio
async def test_script_can_catch_remote_failures(engine):
    code = (
        "try:\n"
        "    await alpha.missing()\n"
        "except Exception as e:\n"
        "    return str(e)"
    )
    res = await engine.execute(code)
    assert res.logs == [{"returned": "unknown capability 'missing' for the alpha MCP"}]


@pytest.mark.asyncio
async def test_host_modules_are_not_reachable(engine):
    res = await engine.execute("import os\nreturn os.getcwd()")
    assert res.error
    assert res.logs == []

    res = await engine.execute("return open('/etc/passwd').read()")
    assert "open" in res.error


@pytest.mark.asyncio
async def test_syntax_error_is_reported_without_running(engine):
    res = await engine.execute("console.log('x')\ndef (:")
    assert res.error
    assert res.stack
    assert res.logs == []


@pytest.mark.asyncio
async def test_empty_script_returns_no_logs(engine):
    res = await engine.execute("   \n# nothing\n")
    assert res.to_dict() == {"logs": []}


def test_compile_script_keeps_line_numbers():
    code = compile_script("x = 1\n\nraise ValueError('line three')")
    assert code.co_filename == "<script>"


@pytest.mark.asyncio
async def test_reserved_service_names_only_reachable_through_services(workspace):
    b = ConnectionBroker(
        [descriptor("json"), descriptor("my-svc")],
        connector=FakeConnector({"echo": lambda a: text_result(a["text"])}),
    )
    engine = ScriptEngine(b, workspace)

    res = await engine.execute(
        "a = await services['json'].echo(text='j')\n"
        "b = await services['my-svc'].echo(text='m')\n"
        "return [json.dumps(1), a['content'][0]['text'], b['content'][0]['text']]"
    )
    assert res.logs == [{"returned": ["1", "j", "m"]}]
    await b.aclose()


@pytest.mark.asyncio
async def test_workspace_binding_hides_host_root(engine, workspace):
    outside = workspace.root.parent / "outside.txt"
    outside.write_text("host secret", encoding="utf-8")

    res = await engine.execute("return workspace.root")
    assert "root" in res.error
    assert res.logs == []

    res = await engine.execute("return await workspace.read('../outside.txt')")
    assert "Path traversal blocked" in res.error

    res = await engine.execute("await workspace.write('a.txt', 'in')\nreturn await workspace.read('a.txt')")
    assert res.logs == [{"returned": "in"}]
    assert outside.read_text(encoding="utf-8") == "host secret"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code",
    [
        "b = alpha._broker\nawait b.aclose()",
        "await workspace._ws.read('x')",
        "return alpha.echo.__closure__",
        "raise Exception.__base__('x')",
    ],
)
async def test_private_attributes_are_rejected_before_running(engine, broker, code):
    res = await engine.execute("console.log('x')\n" + code)

    assert "private attribute" in res.error
    assert res.logs == []
    assert broker._closed is False


@pytest.mark.asyncio
async def test_script_cannot_close_the_shared_broker(engine):
    await engine.execute("await alpha._broker.aclose()")

    res = await engine.execute("r = await alpha.echo(text='still here')\nreturn r['content'][0]['text']")
    assert res.error is None
    assert res.logs == [{"returned": "still here"}]


@pytest.mark.asyncio
async def test_base_exception_from_script_becomes_error_result(engine):
    res = await engine.execute("console.log('before')\nawait alpha.halt()")

    assert res.error == "halted by tool"
    assert res.stack and "Halt" in res.stack
    assert res.logs == ["before"]
