"""Splitting a shell input line into commands joined by pipe operators."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Command:
    """One program invocation together with where its input and output go.

    ``pipe_next`` sends stdout to the next command on the line (``|``).
    ``pipe_ahead`` sends stdout to the first command N lines ahead (``|N``).
    ``merge_stderr`` sends stderr to the same pipe as stdout (``!`` / ``!N``).
    ``output_file`` redirects stdout to a file (``> name``).
    ``user_pipe_in`` and ``user_pipe_out`` name the other user of a user
    pipe (``<N`` / ``>N``) and are zero when unused.
    """

    argv: list[str] = field(default_factory=list)
    output_file: str | None = None
    pipe_next: bool = False
    pipe_ahead: int = 0
    merge_stderr: bool = False
    user_pipe_in: int = 0
    user_pipe_out: int = 0


def tokenize(line: str) -> list[str]:
    """Split a line on spaces, dropping empty tokens."""
    return [token for token in line.split(" ") if token]


def _finish(command: Command, redirect: bool) -> Command:
    if redirect:
        if len(command.argv) < 2 or command.argv[-1] == ">":
            raise ValueError("missing file name after '>'")
        command.output_file = command.argv[-1]
        del command.argv[-2:]
    return command


def split_commands(line: str, user_pipes: bool = False) -> list[Command]:
    """Parse a line into the commands it holds, in order.

    With ``user_pipes`` the tokens ``<N`` and ``>N`` attach user pipes to
    the current command instead of ending it.  Raises ValueError when a
    pipe count is not a number or a redirection has no file name.
    """
    operators = "|!><" if user_pipes else "|!>"
    commands: list[Command] = []
    current = Command()
    redirect = False

    for token in tokenize(line):
        if token[0] not in operators:
            current.argv.append(token)
            continue
        if token == ">":
            current.argv.append(token)
            redirect = True
            continue

        number = token[1:]
        if user_pipes and token[0] in "<>" and number:
            value = int(number)
            if token[0] == "<":
                current.user_pipe_in = value
            else:
                current.user_pipe_out = value
            continue

        if token[0] == "!":
            current.merge_stderr = True
        if number:
            current.pipe_ahead = int(number)
        else:
            current.pipe_next = True
        commands.append(_finish(current, redirect))
        current = Command()
        redirect = False

    if current.argv:
        commands.append(_finish(current, redirect))
    return commands