"""A chat shell server that serves every client from its own process.

The user table and the message slot live in memory shared by all client
processes.  Messages are delivered by signalling the receiving processes,
and user pipes are named pipes in a common directory.
"""

from __future__ import annotations

import argparse
import mmap
import multiprocessing
import os
import re
import signal
import socket
import struct
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator

from netshell.chat import (
    DEFAULT_NICKNAME,
    MAX_USERS,
    WHO_HEADER,
    ChatUser,
    login_message,
    logout_message,
    welcome_banner,
)
from netshell.parsing import Command, split_commands
from netshell.shell import DEFAULT_PATH, PROMPT, NumberedPipe

DEFAULT_PORT = 7001
DEFAULT_FIFO_ROOT = "./user_pipe/"
BACKLOG = 1
MESSAGE_SIZE = 1024
FIFO_PERMS = 0o666
DELIVERY_TIMEOUT = 1.0

_FIFO_NAME = re.compile(r"(\d+)_(\d+)")
_SLOT = struct.Struct("<II30s50sB")
_PENDING_OFFSET = _SLOT.size - 1
_SLOTS = MAX_USERS + 1


class FifoDirectory:
    """Named pipes ``<sender>_<receiver>`` kept in one directory."""

    def __init__(self, root: str | os.PathLike = DEFAULT_FIFO_ROOT) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, sender: int, receiver: int) -> Path:
        return self.root / f"{sender}_{receiver}"

    def exists(self, sender: int, receiver: int) -> bool:
        return os.path.lexists(self.path(sender, receiver))

    def create(self, sender: int, receiver: int) -> Path:
        """Make the FIFO; FileExistsError if it is already there."""
        path = self.path(sender, receiver)
        os.mkfifo(path, FIFO_PERMS)
        return path

    def remove(self, sender: int, receiver: int) -> bool:
        """Delete the FIFO; False if there was none."""
        try:
            self.path(sender, receiver).unlink()
        except FileNotFoundError:
            return False
        return True

    def clear_user(self, uid: int) -> None:
        """Delete every FIFO that ``uid`` sends to or receives from."""
        for sender, receiver in list(self._entries()):
            if uid in (sender, receiver):
                self.remove(sender, receiver)

    def _entries(self) -> Iterator[tuple[int, int]]:
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return
        for name in names:
            match = _FIFO_NAME.fullmatch(name)
            if match:
                yield int(match[1]), int(match[2])

    def _senders_to(self, receiver: int) -> list[int]:
        return sorted(s for s, r in self._entries() if r == receiver)

    def _clear(self) -> None:
        for sender, receiver in list(self._entries()):
            self.remove(sender, receiver)


@dataclass
class _Slot:
    pid: int = 0
    port: int = 0
    ip: str = ""
    nickname: str = DEFAULT_NICKNAME


class _SharedState:
    """User table, message slot and pipe handshakes shared across fork."""

    def __init__(self) -> None:
        self._message_offset = _SLOT.size * _SLOTS
        self._ack_offset = self._message_offset + MESSAGE_SIZE
        self.memory = mmap.mmap(-1, self._ack_offset + _SLOTS * _SLOTS)
        context = multiprocessing.get_context("fork")
        self.table_lock = context.Lock()
        self.message_lock = context.Lock()
        for uid in range(_SLOTS):
            self.write_slot(uid, _Slot())

    def read_slot(self, uid: int) -> _Slot:
        pid, port, ip, nickname, _ = _SLOT.unpack_from(self.memory, uid * _SLOT.size)
        return _Slot(
            pid,
            port,
            ip.rstrip(b"\0").decode("utf-8", "ignore"),
            nickname.rstrip(b"\0").decode("utf-8", "ignore"),
        )

    def write_slot(self, uid: int, slot: _Slot) -> None:
        offset = uid * _SLOT.size
        _SLOT.pack_into(
            self.memory,
            offset,
            slot.pid,
            slot.port,
            slot.ip.encode()[:29],
            slot.nickname.encode()[:49],
            self.memory[offset + _PENDING_OFFSET],
        )

    def pending(self, uid: int) -> bool:
        return bool(self.memory[uid * _SLOT.size + _PENDING_OFFSET])

    def set_pending(self, uid: int, value: bool) -> None:
        self.memory[uid * _SLOT.size + _PENDING_OFFSET] = int(value)

    def message(self) -> str:
        end = self._message_offset + MESSAGE_SIZE
        raw = bytes(self.memory[self._message_offset:end])
        return raw.split(b"\0", 1)[0].decode("utf-8", "replace")

    def set_message(self, text: str) -> None:
        data = text.encode()[: MESSAGE_SIZE - 1].ljust(MESSAGE_SIZE, b"\0")
        self.memory[self._message_offset:self._message_offset + MESSAGE_SIZE] = data

    def acknowledged(self, sender: int, receiver: int) -> bool:
        return bool(self.memory[self._ack_offset + sender * _SLOTS + receiver])

    def set_acknowledged(self, sender: int, receiver: int, value: bool) -> None:
        self.memory[self._ack_offset + sender * _SLOTS + receiver] = int(value)

    def close(self) -> None:
        self.memory.close()


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def _wait_until(done: Callable[[], bool], timeout: float) -> None:
    deadline = time.monotonic() + timeout
    while not done() and time.monotonic() < deadline:
        time.sleep(0.001)


@dataclass
class _Session:
    uid: int
    conn: socket.socket
    env: dict[str, str]
    pipes: list[NumberedPipe] = field(default_factory=list)
    mailbox: dict[int, int] = field(default_factory=dict)

    def send(self, text: str) -> None:
        try:
            _write_all(self.conn.fileno(), text.encode())
        except OSError:
            pass


def _reap_children(signum, frame) -> None:
    while True:
        try:
            pid, _ = os.waitpid(-1, os.WNOHANG)
        except ChildProcessError:
            return
        if pid == 0:
            return


class MultiProcessServer:
    """Chat shell server forking one process for each client."""

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        fifo_root: str | os.PathLike = DEFAULT_FIFO_ROOT,
    ) -> None:
        self.fifos = FifoDirectory(fifo_root)
        self.fifos._clear()
        self.shared = _SharedState()
        self.listener = socket.create_server(("", port), backlog=BACKLOG)
        self._session: _Session | None = None
        self._running: list[subprocess.Popen] = []
        self._builtins = {
            "printenv": self._printenv,
            "setenv": self._setenv,
            "who": self._who,
            "name": self._name,
            "tell": self._tell,
            "yell": self._yell,
        }

    def __enter__(self) -> "MultiProcessServer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.listener.close()

    def handle_line(self, uid: int, line: str) -> bool:
        """Run one input line for the user this process serves.

        Returns False once the user has left.  KeyError if this process
        does not serve ``uid``.
        """
        session = self._session
        if session is None or session.uid != uid:
            raise KeyError(uid)
        line = line.rstrip("\n")
        if line.endswith("\r"):
            line = line[:-1]
        if line == "exit":
            self._logout()
            return False
        if not line:
            return True

        try:
            commands = split_commands(line, user_pipes=True)
        except ValueError as error:
            session.send(f"{error}\n")
            return True

        ended_on_numbered_pipe = False
        for command in commands:
            ended_on_numbered_pipe = False
            if not command.argv:
                continue
            builtin = self._builtins.get(command.argv[0])
            if builtin is not None:
                if not builtin(session, command):
                    break
            else:
                ended_on_numbered_pipe = self._spawn(session, command, line)
        if not ended_on_numbered_pipe:
            for pipe in session.pipes:
                pipe.counter -= 1
        self._reap()
        return True

    def serve_forever(self) -> None:
        """Accept clients forever, forking a process to serve each one."""
        previous = signal.signal(signal.SIGCHLD, _reap_children)
        try:
            while True:
                conn, address = self.listener.accept()
                try:
                    uid = self._reserve(address)
                except RuntimeError:
                    conn.close()
                    continue
                pid = os.fork()
                if pid == 0:
                    try:
                        self.listener.close()
                        self._run_client(uid, conn)
                    finally:
                        os._exit(0)
                conn.close()
        finally:
            signal.signal(signal.SIGCHLD, previous)

    # --- user table -------------------------------------------------------

    def _reserve(self, address) -> int:
        with self.shared.table_lock:
            for uid in range(1, MAX_USERS + 1):
                if not self.shared.read_slot(uid).port:
                    self.shared.write_slot(uid, _Slot(0, int(address[1]), address[0]))
                    return uid
        raise RuntimeError("no free user slot")

    def _user(self, uid: int) -> _Slot | None:
        if not 1 <= uid <= MAX_USERS:
            return None
        slot = self.shared.read_slot(uid)
        return slot if slot.port else None

    def _logged_in(self) -> Iterator[tuple[int, _Slot]]:
        for uid in range(1, MAX_USERS + 1):
            slot = self.shared.read_slot(uid)
            if slot.port:
                yield uid, slot

    def _chat_user(self, uid: int) -> ChatUser:
        slot = self.shared.read_slot(uid)
        session = self._session
        send = session.send if session is not None else (lambda text: None)
        return ChatUser(uid, slot.ip, slot.port, send, slot.nickname)

    # --- messages ---------------------------------------------------------

    def _deliver(self, message: str, recipients: Iterable[int]) -> None:
        with self.shared.message_lock:
            self.shared.set_message(message)
            targets = []
            for uid in recipients:
                slot = self.shared.read_slot(uid)
                if slot.pid and slot.port:
                    self.shared.set_pending(uid, True)
                    targets.append((uid, slot.pid))
            for uid, pid in targets:
                try:
                    os.kill(pid, signal.SIGUSR1)
                except ProcessLookupError:
                    self.shared.set_pending(uid, False)
            _wait_until(
                lambda: not any(self.shared.pending(uid) for uid, _ in targets),
                DELIVERY_TIMEOUT,
            )
            for uid, _ in targets:
                self.shared.set_pending(uid, False)

    def _broadcast(self, message: str) -> None:
        self._deliver(message, range(1, MAX_USERS + 1))

    def _on_message(self, signum, frame) -> None:
        session = self._session
        if session is None:
            return
        session.send(self.shared.message())
        self.shared.set_pending(session.uid, False)

    def _on_user_pipe(self, signum, frame) -> None:
        session = self._session
        if session is None:
            return
        for sender in self.fifos._senders_to(session.uid):
            if sender in session.mailbox:
                continue
            try:
                fd = os.open(
                    self.fifos.path(sender, session.uid), os.O_RDONLY | os.O_NONBLOCK
                )
            except OSError:
                continue
            os.set_blocking(fd, True)
            session.mailbox[sender] = fd
            self.shared.set_acknowledged(sender, session.uid, True)

    # --- client process ---------------------------------------------------

    def _run_client(self, uid: int, conn: socket.socket) -> None:
        signal.signal(signal.SIGCHLD, signal.SIG_DFL)
        signal.signal(signal.SIGUSR1, self._on_message)
        signal.signal(signal.SIGUSR2, self._on_user_pipe)
        with self.shared.table_lock:
            slot = self.shared.read_slot(uid)
            slot.pid = os.getpid()
            self.shared.write_slot(uid, slot)

        env = dict(os.environ)
        env["PATH"] = DEFAULT_PATH
        session = _Session(uid, conn, env)
        self._session = session
        try:
            with conn.makefile("rb") as reader:
                session.send(welcome_banner())
                self._broadcast(login_message(self._chat_user(uid)))
                while True:
                    session.send(PROMPT)
                    try:
                        raw = reader.readline()
                    except OSError:
                        raw = b""
                    if not raw:
                        self._logout()
                        break
                    if not self.handle_line(uid, raw.decode("utf-8", "replace")):
                        break
        finally:
            self._session = None
            conn.close()

    def _logout(self) -> None:
        session = self._session
        if session is None:
            return
        user = self._chat_user(session.uid)
        with self.shared.table_lock:
            self.shared.write_slot(session.uid, _Slot())
        self.fifos.clear_user(session.uid)
        for fd in session.mailbox.values():
            try:
                os.close(fd)
            except OSError:
                pass
        session.mailbox.clear()
        for pipe in session.pipes:
            pipe.close()
        session.pipes.clear()
        self._broadcast(logout_message(user))

    # --- built-in commands ------------------------------------------------

    def _printenv(self, session: _Session, command: Command) -> bool:
        if len(command.argv) >= 2:
            value = session.env.get(command.argv[1], "")
            if value:
                session.send(f"{value}\n")
        return True

    def _setenv(self, session: _Session, command: Command) -> bool:
        if len(command.argv) >= 3:
            session.env[command.argv[1]] = command.argv[2]
        return True

    def _who(self, session: _Session, command: Command) -> bool:
        rows = [WHO_HEADER]
        for uid, slot in self._logged_in():
            row = f"{uid}\t{slot.nickname}\t{slot.ip}:{slot.port}"
            if uid == session.uid:
                row += "\t<-me"
            rows.append(row + "\n")
        session.send("".join(rows))
        return True

    def _name(self, session: _Session, command: Command) -> bool:
        if len(command.argv) < 2:
            return True
        name = command.argv[1]
        if any(slot.nickname == name for _, slot in self._logged_in()):
            session.send(f"*** User '{name}' already exists. ***\n")
            return False
        with self.shared.table_lock:
            slot = self.shared.read_slot(session.uid)
            slot.nickname = name
            self.shared.write_slot(session.uid, slot)
        self._broadcast(f"*** User from {slot.ip}:{slot.port} is named '{name}'. ***\n")
        return True

    def _tell(self, session: _Session, command: Command) -> bool:
        if len(command.argv) < 2:
            return True
        try:
            target = int(command.argv[1])
        except ValueError:
            target = 0
        if self._user(target) is None:
            session.send(f"*** Error: user #{command.argv[1]} does not exist yet. ***\n")
            return True
        sender = self.shared.read_slot(session.uid)
        text = "".join(f" {word}" for word in command.argv[2:])
        self._deliver(f"*** {sender.nickname} told you ***:{text}\n", [target])
        return True

    def _yell(self, session: _Session, command: Command) -> bool:
        sender = self.shared.read_slot(session.uid)
        text = "".join(f" {word}" for word in command.argv[1:])
        self._broadcast(f"*** {sender.nickname} yelled ***:{text}\n")
        return True

    # --- programs ---------------------------------------------------------

    def _open_user_pipe(self, sender: int, receiver: int, receiver_pid: int) -> int:
        path = self.fifos.create(sender, receiver)
        fd = os.open(path, os.O_RDWR)
        self.shared.set_acknowledged(sender, receiver, False)
        try:
            os.kill(receiver_pid, signal.SIGUSR2)
        except ProcessLookupError:
            return fd
        _wait_until(
            lambda: self.shared.acknowledged(sender, receiver), DELIVERY_TIMEOUT
        )
        return fd

    def _spawn(self, session: _Session, command: Command, line: str) -> bool:
        uid = session.uid
        conn_fd = session.conn.fileno()
        stdin_fd = conn_fd
        devnull: int | None = None
        source: NumberedPipe | None = None
        incoming: int | None = None
        outgoing_fd: int | None = None

        def null_fd() -> int:
            nonlocal devnull
            if devnull is None:
                devnull = os.open(os.devnull, os.O_RDWR)
            return devnull

        if command.user_pipe_in:
            sender_id = command.user_pipe_in
            sender = self._user(sender_id)
            if sender is None:
                stdin_fd = null_fd()
                session.send(f"*** Error: user #{sender_id} does not exist yet. ***\n")
            elif sender_id in session.mailbox:
                me = self.shared.read_slot(uid)
                self._broadcast(
                    f"*** {me.nickname} (#{uid}) just received from "
                    f"{sender.nickname} (#{sender_id}) by '{line}' ***\n"
                )
                stdin_fd = session.mailbox[sender_id]
                incoming = sender_id
            else:
                stdin_fd = null_fd()
                session.send(
                    f"*** Error: the pipe #{sender_id}->#{uid} does not exist yet. ***\n"
                )
        else:
            source = next((p for p in session.pipes if p.counter == 0), None)
            if source is not None:
                stdin_fd = source.read_fd

        target_fd: int | None = None
        if command.pipe_ahead:
            match = next(
                (p for p in session.pipes if p.counter == command.pipe_ahead), None
            )
            if match is None:
                match = NumberedPipe.open(command.pipe_ahead)
                session.pipes.append(match)
            target_fd = match.write_fd
        elif command.pipe_next:
            pipe = NumberedPipe.open(0)
            session.pipes.append(pipe)
            target_fd = pipe.write_fd
        elif command.user_pipe_out:
            receiver_id = command.user_pipe_out
            receiver = self._user(receiver_id)
            if receiver is None:
                target_fd = null_fd()
                session.send(f"*** Error: user #{receiver_id} does not exist yet. ***\n")
            elif self.fifos.exists(uid, receiver_id):
                target_fd = null_fd()
                session.send(
                    f"*** Error: the pipe #{uid}->#{receiver_id} already exists. ***\n"
                )
            else:
                me = self.shared.read_slot(uid)
                self._broadcast(
                    f"*** {me.nickname} (#{uid}) just piped '{line}' to "
                    f"{receiver.nickname} (#{receiver_id}) ***\n"
                )
                outgoing_fd = self._open_user_pipe(uid, receiver_id, receiver.pid)
                target_fd = outgoing_fd

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
                env=session.env,
                close_fds=True,
            )
        except OSError:
            try:
                _write_all(stderr_fd, f"Unknown command: [{command.argv[0]}].\n".encode())
            except OSError:
                pass
        finally:
            if file_fd is not None:
                os.close(file_fd)

        if source is not None:
            session.pipes.remove(source)
            source.close()
        if incoming is not None:
            os.close(session.mailbox.pop(incoming))
            self.fifos.remove(incoming, uid)
        if outgoing_fd is not None:
            os.close(outgoing_fd)
        if devnull is not None:
            os.close(devnull)
        if command.pipe_ahead:
            for pipe in session.pipes:
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
    """Start the multi-process server on the given port."""
    parser = argparse.ArgumentParser(description="Chat shell server, one process per client.")
    parser.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT)
    parser.add_argument("--fifo-dir", default=DEFAULT_FIFO_ROOT)
    args = parser.parse_args(argv)
    try:
        with MultiProcessServer(args.port & 0xFFFF, args.fifo_dir) as server:
            server.serve_forever()
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())