"""A CGI console that replays command files against remote shell servers."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, TextIO

N_SERVERS = 5
TEST_CASE_DIR = "test_case"
READ_SIZE = 102400
CONTENT_TYPE = "Content-type: text/html\r\n\r\n"

_ESCAPES = str.maketrans(
    {
        "<": "&lt;",
        ">": "&gt;",
        "&": "&amp;",
        '"': "&quot;",
        "'": "&#39;",
        "\n": "&NewLine;",
        "\r": "",
    }
)

_PAGE_HEAD = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8" />
<title>Console</title>
<style>
* {
font-family: monospace;
font-size: 1rem !important;
}
body {
background-color: #212529;
}
pre {
color: #cccccc;
}
b {
color: #01b468;
}
</style>
</head>
<body>
<table class="table table-dark table-bordered">
<thead>
<tr>
"""


@dataclass(frozen=True)
class Target:
    """A shell server to connect to and the command file to replay on it."""

    host: str = ""
    port: str = ""
    file: str = ""

    @property
    def active(self) -> bool:
        return bool(self.host)


def html_escape(text: str) -> str:
    """Escape text for a single-quoted string inside an HTML script."""
    return text.translate(_ESCAPES)


def parse_query_string(query: str) -> list[Target]:
    """Read ``h<i>``, ``p<i>`` and ``f<i>`` for each of the session slots."""
    fields = dict(part.partition("=")[::2] for part in query.split("&") if part)
    return [
        Target(fields.get(f"h{i}", ""), fields.get(f"p{i}", ""), fields.get(f"f{i}", ""))
        for i in range(N_SERVERS)
    ]


def render_console_page(targets: Iterable[Target]) -> str:
    """The HTML page with one output column per active target."""
    active = [(i, t) for i, t in enumerate(targets) if t.active]
    headers = "".join(f'<th scope="col">{t.host}:{t.port}</th>\n' for _, t in active)
    cells = "".join(
        f'<td><pre id="s{i}" class="mb-0"></pre></td>\n' for i, _ in active
    )
    return (
        _PAGE_HEAD
        + headers
        + "</tr>\n</thead>\n<tbody>\n<tr>\n"
        + cells
        + "</tr>\n</tbody>\n</table>\n</body>\n</html>\n"
    )


def output_script(index: int, text: str) -> str:
    """Script appending server output to column ``index``."""
    return (
        f"<script>document.getElementById('s{index}').innerHTML += "
        f"'{html_escape(text)}';</script>"
    )


def command_script(index: int, text: str) -> str:
    """Script appending a sent command, in bold, to column ``index``."""
    return (
        f"<script>document.getElementById('s{index}').innerHTML += "
        f"'<b>{html_escape(text)}</b>';</script>"
    )


def _read_commands(path: Path) -> deque[str]:
    try:
        with open(path, encoding="utf-8", newline="") as handle:
            content = handle.read()
    except OSError:
        return deque()
    lines = content.split("\n")
    if content.endswith("\n"):
        lines.pop()
    return deque(line for line in lines) if content else deque()


class ConsoleSession:
    """Feeds one command file to one server, echoing both sides as HTML."""

    def __init__(
        self,
        index: int,
        target: Target,
        out: TextIO,
        test_dir: str | os.PathLike = TEST_CASE_DIR,
    ) -> None:
        self.index = index
        self.target = target
        self.out = out
        self._commands = _read_commands(Path(test_dir) / target.file)

    def _emit(self, html: str) -> None:
        self.out.write(html)
        self.out.flush()

    async def run(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Send a command after every prompt until ``exit`` or the file ends."""
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                text = data.decode("utf-8", "replace").split("\0", 1)[0]
                self._emit(output_script(self.index, text))
                if "%" not in text:
                    continue
                if not self._commands:
                    break
                command = self._commands.popleft() + "\n"
                self._emit(command_script(self.index, command))
                writer.write(command.encode())
                await writer.drain()
                if "exit" in command:
                    break
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ConnectionError):
                pass


async def _run_one(index: int, target: Target, out: TextIO, test_dir) -> None:
    session = ConsoleSession(index, target, out, test_dir)
    try:
        reader, writer = await asyncio.open_connection(target.host, target.port)
    except OSError:
        return
    try:
        await session.run(reader, writer)
    except (OSError, ConnectionError):
        pass


async def run_console(
    targets: Iterable[Target],
    out: TextIO,
    test_dir: str | os.PathLike = TEST_CASE_DIR,
) -> None:
    """Run a session for every active target concurrently."""
    await asyncio.gather(
        *(
            _run_one(index, target, out, test_dir)
            for index, target in enumerate(targets)
            if target.active
        )
    )


def main(argv: list[str] | None = None) -> int:
    """Serve the console page for the targets in QUERY_STRING."""
    parser = argparse.ArgumentParser(description="Console CGI program.")
    parser.add_argument("--test-dir", default=TEST_CASE_DIR)
    args = parser.parse_args(argv)
    targets = parse_query_string(os.environ.get("QUERY_STRING", ""))
    out = sys.stdout
    out.write(CONTENT_TYPE)
    out.write(render_console_page(targets))
    out.flush()
    asyncio.run(run_console(targets, out, args.test_dir))
    return 0


if __name__ == "__main__":
    sys.exit(main())