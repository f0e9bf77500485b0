"""An HTTP server that serves the panel and console pages itself."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import html
import os
import sys
from typing import Iterable, Sequence

from netshell.cgi_env import cgi_environ, parse_request, script_path
from netshell.console import (
    N_SERVERS,
    TEST_CASE_DIR,
    parse_query_string,
    render_console_page,
    run_console,
)

READ_SIZE = 1024
RESPONSE_HEAD = b"HTTP/1.1 200 OK\r\nContent-type: text/html\r\n\r\n"
PANEL_SCRIPT = "./panel.cgi"
CONSOLE_SCRIPT = "./console.cgi"
DEFAULT_HOSTS: tuple[str, ...] = ("localhost",)
DEFAULT_FILES: tuple[str, ...] = tuple(f"t{i}.txt" for i in range(1, 6))

_PANEL_HEAD = """<!DOCTYPE html>
<html lang="en">
<head>
<title>Panel</title>
<style>
* {
font-family: monospace;
}
</style>
</head>
<body class="bg-secondary pt-5">
<form action="console.cgi" method="GET">
<table class="table mx-auto bg-light" style="width: inherit">
<thead class="thead-dark">
<tr>
<th scope="col">#</th>
<th scope="col">Host</th>
<th scope="col">Port</th>
<th scope="col">Input File</th>
</tr>
</thead>
<tbody>
"""

_PANEL_TAIL = """<tr>
<td colspan="3"></td>
<td>
<button type="submit" class="btn btn-info btn-block">Run</button>
</td>
</tr>
</tbody>
</table>
</form>
</body>
</html>
"""


def _options(values: Iterable[str]) -> str:
    return "".join(
        f'<option value="{html.escape(value, quote=True)}">{html.escape(value)}</option>'
        for value in values
    )


def render_panel_page(hosts: Sequence[str], files: Sequence[str]) -> str:
    """The form with one row of host, port and input file per session."""
    host_options = _options(hosts)
    file_options = _options(files)
    rows = []
    for i in range(N_SERVERS):
        rows.append(
            "<tr>\n"
            f'<th scope="row" class="align-middle">Session {i + 1}</th>\n'
            "<td>\n"
            f'<select name="h{i}" class="custom-select">\n'
            f"<option></option>{host_options}\n"
            "</select>\n"
            "</td>\n"
            "<td>\n"
            f'<input name="p{i}" type="text" class="form-control" size="5" />\n'
            "</td>\n"
            "<td>\n"
            f'<select name="f{i}" class="custom-select">\n'
            "<option></option>\n"
            f"{file_options}\n"
            "</select>\n"
            "</td>\n"
            "</tr>\n"
        )
    return _PANEL_HEAD + "".join(rows) + _PANEL_TAIL


class _StreamOut:
    """Text sink that buffers writes and hands them to an asyncio stream on flush."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._pending: list[str] = []

    def write(self, text: str) -> int:
        self._pending.append(text)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._writer.write("".join(self._pending).encode("utf-8"))
            self._pending.clear()


def _address(info) -> tuple[str, int | str]:
    if isinstance(info, tuple) and len(info) >= 2:
        return info[0], info[1]
    return "", ""


class CgiServer:
    """Serves ``/panel.cgi`` and ``/console.cgi`` without separate programs."""

    def __init__(self, port: int, test_dir: str | os.PathLike = TEST_CASE_DIR) -> None:
        self.port = port
        self.test_dir = test_dir
        self.hosts: list[str] = list(DEFAULT_HOSTS)
        self.files: list[str] = list(DEFAULT_FILES)

    async def handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Answer one request, then close the connection."""
        try:
            data = await reader.read(READ_SIZE)
            if not data:
                return
            try:
                request = parse_request(data)
            except ValueError:
                return
            server_addr, server_port = _address(writer.get_extra_info("sockname"))
            remote_addr, remote_port = _address(writer.get_extra_info("peername"))
            environ = cgi_environ(
                request, server_addr, server_port, remote_addr, remote_port
            )
            writer.write(RESPONSE_HEAD)
            script = script_path(environ["REQUEST_URI"])
            if script == PANEL_SCRIPT:
                writer.write(render_panel_page(self.hosts, self.files).encode("utf-8"))
            elif script == CONSOLE_SCRIPT:
                targets = parse_query_string(environ["QUERY_STRING"])
                writer.write(render_console_page(targets).encode("utf-8"))
                await writer.drain()
                out = _StreamOut(writer)
                try:
                    await run_console(targets, out, self.test_dir)
                finally:
                    out.flush()
            await writer.drain()
        except (OSError, ConnectionError):
            pass
        finally:
            writer.close()
            with contextlib.suppress(OSError, ConnectionError):
                await writer.wait_closed()

    async def serve_forever(self) -> None:
        """Accept and answer requests on ``port`` until cancelled."""
        server = await asyncio.start_server(self.handle, "0.0.0.0", self.port)
        async with server:
            await server.serve_forever()


def main(argv: list[str] | None = None) -> int:
    """Start the server on the given port."""
    parser = argparse.ArgumentParser(description="HTTP server with built-in panel and console.")
    parser.add_argument("port", type=int)
    parser.add_argument("--test-dir", default=TEST_CASE_DIR)
    args = parser.parse_args(argv)
    try:
        asyncio.run(CgiServer(args.port & 0xFFFF, args.test_dir).serve_forever())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())