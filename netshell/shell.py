"""An interactive shell with ordinary and numbered pipes."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import TextIO

from netshell.parsing import Command, split_commands

DEFAULT_PATH = "bin:."
PROMPT = "% "


@dataclass
class NumberedPipe:
    """A pipe whose reader is the first command ``counter`` lines ahead."""

    read_fd: int
    write_fd: int
    counter: int

    @classmethod
    def open(cls, counter: int) -> "NumberedPipe":
        read_fd, write_fd = os.pipe()
        return cls(read_fd, write_fd, counter)

    def close(self) -> None:
        for fd in (self.read_fd, self.write_fd):
            try:
                os.close(fd)
            except OSError:
                pass


class Shell:
    """Reads command lines and runs them, keeping numbered pipes between lines."""

    def __init__(
        self,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr
        if env is None:
            env = dict(os.environ)
            env["PATH"] = DEFAULT_PATH
        self.env = env
        self.pipes: list[NumberedPipe] = []
        self._running: list[subprocess.Popen] = []

    def execute(self, line: str) -> None:
        """Run every command of one input line."""
        ended_on_numbered_pipe = False
        for command in split_commands(line):
            ended_on_numbered_pipe = False
            if not command.argv:
                continue
            name = command.argv[0]
            if name == "printenv":
                self._printenv(command)
            elif name == "setenv":
                self._setenv(command)
            else:
                ended_on_numbered_pipe = self._spawn(command)
        if not ended_on_numbered_pipe:
            self._advance()
        self.stdout.flush()
        self._reap()

    def run(self) -> None:
        """Prompt, read and execute lines until ``exit`` or end of input."""
        try:
            while True:
                self.stdout.write(PROMPT)
                self.stdout.flush()
                raw = self.stdin.readline()
                if not raw:
                    break
                line = raw.rstrip("\n")
                if line.endswith("\r"):
                    line = line[:-1]
                if line == "exit":
                    break
                if not line:
                    continue
                try:
                    self.execute(line)
                except ValueError as error:
                    self.stderr.write(f"{error}\n")
                    self.stderr.flush()
        finally:
            self._close()

    def _printenv(self, command: Command) -> None:
        if len(command.argv) < 2:
            return
        value = self.env.get(command.argv[1], "")
        if value:
            self.stdout.write(f"{value}\n")

    def _setenv(self, command: Command) -> None:
        if len(command.argv) < 3:
            return
        self.env[command.argv[1]] = command.argv[2]

    def _advance(self) -> None:
        for pipe in self.pipes:
            pipe.counter -= 1

    def _input_pipe(self) -> NumberedPipe | None:
        return next((pipe for pipe in self.pipes if pipe.counter == 0), None)

    def _output_fd(self, command: Command) -> int | None:
        if command.pipe_ahead:
            matches = [p for p in self.pipes if p.counter == command.pipe_ahead]
            if matches:
                return matches[-1].write_fd
            pipe = NumberedPipe.open(command.pipe_ahead)
            self.pipes.append(pipe)
            return pipe.write_fd
        if command.pipe_next:
            pipe = NumberedPipe.open(0)
            self.pipes.append(pipe)
            return pipe.write_fd
        return None

    def _spawn(self, command: Command) -> bool:
        source = self._input_pipe()
        stdin_fd = source.read_fd if source else self.stdin.fileno()
        target_fd = self._output_fd(command)
        stdout_fd = target_fd if target_fd is not None else self.stdout.fileno()
        if command.merge_stderr and target_fd is not None:
            stderr_fd = target_fd
        else:
            stderr_fd = self.stderr.fileno()

        self.stdout.flush()
        self.stderr.flush()
        file_fd = None
        process = None
        try:
            if command.output_file is not None:
                file_fd = os.open(
                    command.output_file,
                    os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
                    0o644,
                )
                stdout_fd = file_fd
            process = subprocess.Popen(
                command.argv,
                stdin=stdin_fd,
                stdout=stdout_fd,
                stderr=stderr_fd,
                env=self.env,
                close_fds=True,
            )
        except OSError:
            message = f"Unknown command: [{command.argv[0]}].\n"
            os.write(stderr_fd, message.encode())
        finally:
            if file_fd is not None:
                os.close(file_fd)

        if source is not None:
            self.pipes.remove(source)
            source.close()
        if command.pipe_ahead:
            self._advance()

        if process is not None:
            if command.pipe_next or command.pipe_ahead:
                self._running.append(process)
            else:
                process.wait()
        return bool(command.pipe_ahead)

    def _reap(self) -> None:
        self._running = [p for p in self._running if p.poll() is None]

    def _close(self) -> None:
        for pipe in self.pipes:
            pipe.close()
        self.pipes.clear()
        self._reap()


def main(argv: list[str] | None = None) -> int:
    """Run the shell on the terminal."""
    argparse.ArgumentParser(description="Shell with numbered pipes.").parse_args(argv)
    Shell().run()
    return 0


if __name__ == "__main__":
    sys.exit(main())