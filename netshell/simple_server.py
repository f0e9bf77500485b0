"""A TCP server that gives each connection its own shell process."""

from __future__ import annotations

import argparse
import os
import signal
import socket
import sys

from netshell.shell import DEFAULT_PATH, Shell

DEFAULT_PORT = 7001


def handle_connection(conn: socket.socket) -> None:
    """Run a shell over one connected socket until the client leaves."""
    reader = conn.makefile("r", encoding="utf-8", newline="")
    writer = conn.makefile("w", encoding="utf-8")
    env = dict(os.environ)
    env["PATH"] = DEFAULT_PATH
    try:
        Shell(reader, writer, writer, env).run()
    finally:
        for stream in (reader, writer):
            try:
                stream.close()
            except OSError:
                pass
        conn.close()


def _reap_children(signum, frame) -> None:
    while True:
        try:
            pid, _ = os.waitpid(-1, os.WNOHANG)
        except ChildProcessError:
            return
        if pid == 0:
            return


def serve(port: int) -> None:
    """Accept connections forever, forking a shell process for each."""
    signal.signal(signal.SIGCHLD, _reap_children)
    with socket.create_server(("", port), backlog=1) as listener:
        while True:
            conn, _ = listener.accept()
            pid = os.fork()
            if pid == 0:
                signal.signal(signal.SIGCHLD, signal.SIG_DFL)
                listener.close()
                try:
                    handle_connection(conn)
                finally:
                    os._exit(0)
            conn.close()


def main(argv: list[str] | None = None) -> int:
    """Start the server on the given port."""
    parser = argparse.ArgumentParser(description="Shell server, one process per client.")
    parser.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT)
    args = parser.parse_args(argv)
    try:
        serve(args.port & 0xFFFF)
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())