import asyncio
import io

import pytest

from netshell.console import (
    N_SERVERS,
    ConsoleSession,
    Target,
    command_script,
    html_escape,
    output_script,
    parse_query_string,
    render_console_page,
    run_console,
)

QUERY = "h0=host1&p0=7001&f0=t1.txt&h1=&p1=&f1=&h2=&p2=&f2=&h3=&p3=&f3=&h4=&p4=&f4="


def test_html_escape():
    assert html_escape("<a href=\"x\">&'\n\r") == (
        "&lt;a href=&quot;x&quot;&gt;&amp;&#39;&NewLine;"
    )


def test_parse_query_string():
    targets = parse_query_string(QUERY)
    assert len(targets) == N_SERVERS
    assert targets[0] == Target("host1", "7001", "t1.txt")
    assert not targets[1].active
    assert targets[0].active


def test_parse_query_string_missing_fields():
    targets = parse_query_string("")
    assert targets == [Target()] * N_SERVERS


def test_render_console_page_lists_active_targets():
    page = render_console_page(parse_query_string(QUERY))
    assert '<th scope="col">host1:7001</th>' in page
    assert '<pre id="s0" class="mb-0"></pre>' in page
    assert 'id="s1"' not in page
    assert page.startswith("<!DOCTYPE html>")


def test_output_script():
    assert output_script(2, "a<b") == (
        "<script>document.getElementById('s2').innerHTML += 'a&lt;b';</script>"
    )


def test_command_script_wraps_in_bold():
    script = command_script(1, "ls\n")
    assert script == (
        "<script>document.getElementById('s1').innerHTML += "
        "'<b>ls&NewLine;</b>';</script>"
    )


async def _start_fake_shell(received, done):
    async def handler(reader, writer):
        writer.write(b"welcome\n% ")
        await writer.drain()
        while True:
            line = await reader.readline()
            if not line:
                break
            received.append(line)
            if line.strip() == b"exit":
                break
            writer.write(b"out:" + line + b"% ")
            await writer.drain()
        writer.close()
        done.set()

    return await asyncio.start_server(handler, "127.0.0.1", 0)


@pytest.mark.asyncio
async def test_run_console_replays_file(tmp_path):
    (tmp_path / "t1.txt").write_text("ls\nexit\n")
    received, done = [], asyncio.Event()
    server = await _start_fake_shell(received, done)
    port = server.sockets[0].getsockname()[1]
    out = io.StringIO()
    async with server:
        await run_console([Target("127.0.0.1", str(port), "t1.txt")], out, tmp_path)
        await asyncio.wait_for(done.wait(), 5)
    assert received == [b"ls\n", b"exit\n"]
    html = out.getvalue()
    assert command_script(0, "ls\n") in html
    assert command_script(0, "exit\n") in html
    assert "out:ls&NewLine;" in html


@pytest.mark.asyncio
async def test_session_stops_when_file_ends(tmp_path):
    (tmp_path / "t2.txt").write_text("ls\n")
    received, done = [], asyncio.Event()
    server = await _start_fake_shell(received, done)
    port = server.sockets[0].getsockname()[1]
    out = io.StringIO()
    async with server:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        session = ConsoleSession(3, Target("127.0.0.1", str(port), "t2.txt"), out, tmp_path)
        await session.run(reader, writer)
        await asyncio.wait_for(done.wait(), 5)
    assert received == [b"ls\n"]
    assert out.getvalue().count("getElementById('s3')") == 3


@pytest.mark.asyncio
async def test_run_console_ignores_unreachable_target(tmp_path):
    with socket_port() as port:
        pass
    out = io.StringIO()
    await run_console([Target("127.0.0.1", str(port), "t1.txt")], out, tmp_path)
    assert out.getvalue() == ""


class socket_port:
    """Reserve a free port number and release it on exit."""

    def __enter__(self):
        import socket

        self._sock = socket.socket()
        self._sock.bind(("127.0.0.1", 0))
        return self._sock.getsockname()[1]

    def __exit__(self, *exc_info):
        self._sock.close()