"""A single-process chat shell server multiplexing all clients with select."""

from __future__ import annotations

import argparse
import os
import selectors
import socket
import subprocess
import sys
from dataclasses import dataclass

from netshell.chat import (
    ChatUser,
    UserRegistry,
    login_message,
    logout_message,
    welcome_banner,
)
from netshell.parsing import Command, split_commands
from netshell.shell import PROMPT, NumberedPipe

DEFAULT_PORT = 7001
BACKLOG = 30
READ_SIZE = 15000


@dataclass
class UserPipe:
    """A pipe carrying one user's command output to another user."""

    sender: int
    receiver: int
    read_fd: int
    write_fd: int

    @classmethod
    def open(cls, sender: int, receiver: int) -> "UserPipe":
        read_fd, write_fd = os.pipe()
        return cls(sender, receiver, read_fd, write_fd)

    def close(self) -> None:
        for fd in (self.read_fd, self.write_fd):
            try:
                os.close(fd)
            except OSError:
                pass


class SingleProcessServer:
    """Shell server where every client is served by one process."""

    def __init__(self, port: int = DEFAULT_PORT) -> None:
        self.registry = UserRegistry()
        self.user_pipes: list[UserPipe] = []
        self.listener = socket.create_server(("", port), backlog=BACKLOG)
        self._connections: dict[int, socket.socket] = {}
        self._buffers: dict[int, bytes] = {}
        self._running: list[subprocess.Popen] = []
        self._selector: selectors.BaseSelector | None = None
        self._builtins = {
            "printenv": self._printenv,
            "setenv": self._setenv,
            "who": self._who,
            "name": self._name,
            "tell": self._tell,
            "yell": self._yell,
        }

    def __enter__(self) -> "SingleProcessServer":
        return self

    def __exit__(self, *exc_info) -> None:
        for uid in list(self._connections):
            self._drop(uid)
        for pipe in self.user_pipes:
            pipe.close()
        self.user_pipes.clear()
        self.listener.close()

    def accept(self, conn: socket.socket, address) -> ChatUser:
        """Register a new connection, greet it and announce it to everyone."""

        def send(text: str) -> None:
            try:
                conn.sendall(text.encode())
            except OSError:
                pass

        try:
            user = self.registry.add(address[0], int(address[1]), send)
        except RuntimeError:
            conn.close()
            raise
        self._connections[user.uid] = conn
        self._buffers[user.uid] = b""
        send(welcome_banner())
        self.registry.broadcast(login_message(user))
        send(PROMPT)
        return user

    def handle_line(self, uid: int, line: str) -> bool:
        """Run one input line for ``uid``; False once the user has left."""
        user = self.registry.get(uid)
        if user is None:
            raise KeyError(uid)
        line = line.rstrip("\n")
        if line.endswith("\r"):
            line = line[:-1]
        if line == "exit":
            self._logout(uid)
            return False

        try:
            commands = split_commands(line, user_pipes=True)
        except ValueError as error:
            user.send(f"{error}\n")
            commands = []

        ended_on_numbered_pipe = False
        for command in commands:
            ended_on_numbered_pipe = False
            if not command.argv:
                continue
            builtin = self._builtins.get(command.argv[0])
            if builtin is not None:
                if not builtin(user, command):
                    break
            else:
                ended_on_numbered_pipe = self._spawn(user, command, line)
        if not ended_on_numbered_pipe:
            for pipe in user.pipes:
                pipe.counter -= 1
        self._reap()
        user.send(PROMPT)
        return True

    def serve_forever(self) -> None:
        """Accept clients and serve their lines until interrupted."""
        with selectors.DefaultSelector() as selector:
            self._selector = selector
            selector.register(self.listener, selectors.EVENT_READ, None)
            for uid, conn in self._connections.items():
                selector.register(conn, selectors.EVENT_READ, uid)
            try:
                while True:
                    for key, _ in selector.select():
                        if key.data is None:
                            self._accept_pending(selector)
                        elif key.fileobj is self._connections.get(key.data):
                            self._receive(key.data)
                    self._reap()
            finally:
                self._selector = None

    def _accept_pending(self, selector: selectors.BaseSelector) -> None:
        conn, address = self.listener.accept()
        try:
            user = self.accept(conn, address)
        except RuntimeError:
            return
        selector.register(conn, selectors.EVENT_READ, user.uid)

    def _receive(self, uid: int) -> None:
        conn = self._connections[uid]
        try:
            data = conn.recv(READ_SIZE)
        except OSError:
            data = b""
        if not data:
            self._logout(uid)
            return
        *lines, rest = (self._buffers[uid] + data).split(b"\n")
        self._buffers[uid] = rest
        for raw in lines:
            if not self.handle_line(uid, raw.decode("utf-8", "replace")):
                return

    def _drop(self, uid: int) -> ChatUser:
        user = self.registry.remove(uid)
        conn = self._connections.pop(uid)
        self._buffers.pop(uid, None)
        if self._selector is not None:
            try:
                self._selector.unregister(conn)
            except (KeyError, ValueError):
                pass
        conn.close()
        for pipe in user.pipes:
            pipe.close()
        user.pipes.clear()
        return user

    def _logout(self, uid: int) -> None:
        user = self._drop(uid)
        stale = [p for p in self.user_pipes if uid in (p.sender, p.receiver)]
        for pipe in stale:
            pipe.close()
            self.user_pipes.remove(pipe)
        self.registry.broadcast(logout_message(user))

    def _printenv(self, user: ChatUser, command: Command) -> bool:
        if len(command.argv) >= 2:
            value = user.env.get(command.argv[1], "")
            if value:
                user.send(f"{value}\n")
        return True

    def _setenv(self, user: ChatUser, command: Command) -> bool:
        if len(command.argv) >= 3:
            user.env[command.argv[1]] = command.argv[2]
        return True

    def _who(self, user: ChatUser, command: Command) -> bool:
        user.send(self.registry.who(user.uid))
        return True

    def _name(self, user: ChatUser, command: Command) -> bool:
        if len(command.argv) < 2:
            return True
        return self.registry.rename(user.uid, command.argv[1])

    def _tell(self, user: ChatUser, command: Command) -> bool:
        if len(command.argv) < 2:
            return True
        try:
            target = int(command.argv[1])
        except ValueError:
            user.send(f"*** Error: user #{command.argv[1]} does not exist yet. ***\n")
            return True
        self.registry.tell(user.uid, target, command.argv[2:])
        return True

    def _yell(self, user: ChatUser, command: Command) -> bool:
        self.registry.yell(user.uid, command.argv[1:])
        return True

    def _find_user_pipe(self, sender: int, receiver: int) -> UserPipe | None:
        return next(
            (p for p in self.user_pipes if p.sender == sender and p.receiver == receiver),
            None,
        )

    def _spawn(self, user: ChatUser, command: Command, line: str) -> bool:
        uid = user.uid
        conn_fd = self._connections[uid].fileno()
        stdin_fd = conn_fd
        devnull: int | None = None
        source: NumberedPipe | None = None
        incoming: UserPipe | None = None

        def null_fd() -> int:
            nonlocal devnull
            if devnull is None:
                devnull = os.open(os.devnull, os.O_RDWR)
            return devnull

        if command.user_pipe_in:
            sender_id = command.user_pipe_in
            sender = self.registry.get(sender_id)
            if sender is None:
                stdin_fd = null_fd()
                user.send(f"*** Error: user #{sender_id} does not exist yet. ***\n")
            else:
                incoming = self._find_user_pipe(sender_id, uid)
                if incoming is not None:
                    stdin_fd = incoming.read_fd
                    self.registry.broadcast(
                        f"*** {user.nickname} (#{uid}) just received from "
                        f"{sender.nickname} (#{sender_id}) by '{line}' ***\n"
                    )
                else:
                    stdin_fd = null_fd()
                    user.send(
                        f"*** Error: the pipe #{sender_id}->#{uid} does not exist yet. ***\n"
                    )
        else:
            source = next((p for p in user.pipes if p.counter == 0), None)
            if source is not None:
                stdin_fd = source.read_fd

        target_fd: int | None = None
        if command.pipe_ahead:
            match = next((p for p in user.pipes if p.counter == command.pipe_ahead), None)
            if match is None:
                match = NumberedPipe.open(command.pipe_ahead)
                user.pipes.append(match)
            target_fd = match.write_fd
        elif command.pipe_next:
            pipe = NumberedPipe.open(0)
            user.pipes.append(pipe)
            target_fd = pipe.write_fd
        elif command.user_pipe_out:
            receiver_id = command.user_pipe_out
            receiver = self.registry.get(receiver_id)
            if receiver is None:
                target_fd = null_fd()
                user.send(f"*** Error: user #{receiver_id} does not exist yet. ***\n")
            elif self._find_user_pipe(uid, receiver_id) is not None:
                target_fd = null_fd()
                user.send(
                    f"*** Error: the pipe #{uid}->#{receiver_id} already exists. ***\n"
                )
            else:
                pipe = UserPipe.open(uid, receiver_id)
                self.user_pipes.append(pipe)
                target_fd = pipe.write_fd
                self.registry.broadcast(
                    f"*** {user.nickname} (#{uid}) just piped '{line}' to "
                    f"{receiver.nickname} (#{receiver_id}) ***\n"
                )

        stdout_fd = target_fd if target_fd is not None else conn_fd
        stderr_fd = target_fd if command.merge_stderr and target_fd is not None else conn_fd

        file_fd = None
        process = None
        try:
            if command.output_file is not None:
                file_fd = os.open(
                    command.output_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644
                )
                stdout_fd = file_fd
            process = subprocess.Popen(
                command.argv,
                stdin=stdin_fd,
                stdout=stdout_fd,
                stderr=stderr_fd,
                env=user.env,
                close_fds=True,
            )
        except OSError:
            try:
                os.write(stderr_fd, f"Unknown command: [{command.argv[0]}].\n".encode())
            except OSError:
                pass
        finally:
            if file_fd is not None:
                os.close(file_fd)

        if source is not None:
            user.pipes.remove(source)
            source.close()
        if incoming is not None:
            self.user_pipes.remove(incoming)
            incoming.close()
        if devnull is not None:
            os.close(devnull)
        if command.pipe_ahead:
            for pipe in user.pipes:
                pipe.counter -= 1

        if process is not None:
            if command.pipe_next or command.pipe_ahead:
                self._running.append(process)
            else:
                process.wait()
        return bool(command.pipe_ahead)

    def _reap(self) -> None:
        self._running = [p for p in self._running if p.poll() is None]


def main(argv: list[str] | None = None) -> int:
    """Start the single-process server on the given port."""
    parser = argparse.ArgumentParser(description="Chat shell server in one process.")
    parser.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT)
    args = parser.parse_args(argv)
    try:
        with SingleProcessServer(args.port & 0xFFFF) as server:
            server.serve_forever()
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())