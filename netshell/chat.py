"""Users of the chat-enabled shell server and the messages between them."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Iterator

from netshell.shell import DEFAULT_PATH, NumberedPipe

MAX_USERS = 30
DEFAULT_NICKNAME = "(no name)"
WHO_HEADER = "<ID>\t<nickname>\t<IP:port>\t<indicate me>\n"


def _initial_env() -> dict[str, str]:
    env = dict(os.environ)
    env["PATH"] = DEFAULT_PATH
    return env


@dataclass(eq=False)
class ChatUser:
    """A logged-in user: identity, nickname, environment and numbered pipes."""

    uid: int
    ip: str
    port: int
    send: Callable[[str], None]
    nickname: str = DEFAULT_NICKNAME
    env: dict[str, str] = field(default_factory=_initial_env)
    pipes: list[NumberedPipe] = field(default_factory=list)


class UserRegistry:
    """The set of logged-in users, numbered from 1 up to ``capacity``."""

    def __init__(self, capacity: int = MAX_USERS) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._users: dict[int, ChatUser] = {}

    def __iter__(self) -> Iterator[ChatUser]:
        return iter([self._users[uid] for uid in sorted(self._users)])

    def __len__(self) -> int:
        return len(self._users)

    def add(self, ip: str, port: int, send: Callable[[str], None]) -> ChatUser:
        """Register a user under the lowest free id; RuntimeError when full."""
        uid = next(
            (i for i in range(1, self.capacity + 1) if i not in self._users), None
        )
        if uid is None:
            raise RuntimeError("no free user slot")
        user = ChatUser(uid, ip, port, send)
        self._users[uid] = user
        return user

    def remove(self, uid: int) -> ChatUser:
        """Unregister a user and return it; KeyError if there is none."""
        return self._users.pop(uid)

    def get(self, uid: int) -> ChatUser | None:
        return self._users.get(uid)

    def exists(self, uid: int) -> bool:
        return uid in self._users

    def who(self, uid: int) -> str:
        """The table of logged-in users as seen by ``uid``."""
        rows = [WHO_HEADER]
        for user in self:
            row = f"{user.uid}\t{user.nickname}\t{user.ip}:{user.port}"
            if user.uid == uid:
                row += "\t<-me"
            rows.append(row + "\n")
        return "".join(rows)

    def rename(self, uid: int, name: str) -> bool:
        """Give ``uid`` a new nickname unless some user already holds it."""
        user = self._users[uid]
        if any(other.nickname == name for other in self._users.values()):
            user.send(f"*** User '{name}' already exists. ***\n")
            return False
        user.nickname = name
        self.broadcast(f"*** User from {user.ip}:{user.port} is named '{name}'. ***\n")
        return True

    def tell(self, uid: int, target: int, words: list[str]) -> bool:
        """Send a private message; report to the sender if the target is absent."""
        sender = self._users[uid]
        receiver = self._users.get(target)
        if receiver is None:
            sender.send(f"*** Error: user #{target} does not exist yet. ***\n")
            return False
        text = "".join(f" {word}" for word in words)
        receiver.send(f"*** {sender.nickname} told you ***:{text}\n")
        return True

    def yell(self, uid: int, words: list[str]) -> None:
        """Send a message to every user."""
        sender = self._users[uid]
        text = "".join(f" {word}" for word in words)
        self.broadcast(f"*** {sender.nickname} yelled ***:{text}\n")

    def broadcast(self, message: str) -> None:
        for user in self:
            user.send(message)


def welcome_banner() -> str:
    return (
        "****************************************\n"
        "** Welcome to the information server. **\n"
        "****************************************\n"
    )


def login_message(user: ChatUser) -> str:
    return f"*** User '{user.nickname}' entered from {user.ip}:{user.port}. ***\n"


def logout_message(user: ChatUser) -> str:
    return f"*** User '{user.nickname}' left. ***\n"