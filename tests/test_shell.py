import io
import os

import pytest

from netshell.shell import NumberedPipe, Shell


@pytest.fixture
def io_files(tmp_path):
    stdin = open(os.devnull)
    out_path = tmp_path / "stdout.txt"
    err_path = tmp_path / "stderr.txt"
    stdout = open(out_path, "w")
    stderr = open(err_path, "w")
    files = {"stdin": stdin, "stdout": stdout, "stderr": stderr}
    yield files, out_path, err_path
    for handle in files.values():
        handle.close()


def make_shell(files):
    env = {"PATH": os.environ.get("PATH", "/bin:/usr/bin")}
    return Shell(files["stdin"], files["stdout"], files["stderr"], env)


def read(files, path):
    files["stdout"].flush()
    files["stderr"].flush()
    return path.read_text()


def test_setenv_then_printenv(io_files):
    files, out_path, _ = io_files
    shell = make_shell(files)
    shell.execute("setenv FOO bar")
    shell.execute("printenv FOO")
    assert read(files, out_path) == "bar\n"
    assert shell.env["FOO"] == "bar"


def test_printenv_of_unset_variable_prints_nothing(io_files):
    files, out_path, _ = io_files
    shell = make_shell(files)
    shell.execute("printenv NO_SUCH_VARIABLE_HERE")
    assert read(files, out_path) == ""


def test_default_environment_path():
    shell = Shell(env=None)
    assert shell.env["PATH"] == "bin:."


def test_ordinary_pipe(io_files):
    files, out_path, _ = io_files
    shell = make_shell(files)
    shell.execute("echo hello | cat")
    assert read(files, out_path) == "hello\n"
    assert shell.pipes == []


def test_numbered_pipe_reaches_next_line(io_files):
    files, out_path, _ = io_files
    shell = make_shell(files)
    shell.execute("echo one |1")
    assert [pipe.counter for pipe in shell.pipes] == [0]
    shell.execute("cat")
    assert read(files, out_path) == "one\n"
    assert shell.pipes == []


def test_numbered_pipes_to_same_line_share_one_pipe(io_files):
    files, out_path, _ = io_files
    shell = make_shell(files)
    shell.execute("echo a |2")
    shell.execute("echo b |1")
    assert len(shell.pipes) == 1
    shell.execute("cat")
    assert sorted(read(files, out_path).splitlines()) == ["a", "b"]


def test_builtin_line_counts_down_numbered_pipe(io_files):
    files, out_path, _ = io_files
    shell = make_shell(files)
    shell.execute("echo later |2")
    shell.execute("setenv X y")
    assert [pipe.counter for pipe in shell.pipes] == [0]
    shell.execute("cat")
    assert read(files, out_path) == "later\n"


def test_unknown_command_reports_on_stderr(io_files):
    files, _, err_path = io_files
    shell = make_shell(files)
    shell.execute("no_such_command_xyz arg")
    assert read(files, err_path) == "Unknown command: [no_such_command_xyz].\n"


def test_unknown_command_error_goes_through_bang_pipe(io_files):
    files, out_path, err_path = io_files
    shell = make_shell(files)
    shell.execute("no_such_command_xyz !1")
    shell.execute("cat")
    assert read(files, out_path) == "Unknown command: [no_such_command_xyz].\n"
    assert read(files, err_path) == ""


def test_file_redirection(io_files, tmp_path, monkeypatch):
    files, out_path, _ = io_files
    monkeypatch.chdir(tmp_path)
    shell = make_shell(files)
    shell.execute("echo saved > result.txt")
    assert (tmp_path / "result.txt").read_text() == "saved\n"
    assert read(files, out_path) == ""


def test_run_prompts_and_stops_at_exit(io_files):
    files, out_path, _ = io_files
    files["stdin"].close()
    files["stdin"] = io.StringIO("setenv A 1\nprintenv A\nexit\nprintenv A\n")
    shell = make_shell(files)
    shell.run()
    assert read(files, out_path) == "% % 1\n% "


def test_run_strips_carriage_returns_and_skips_blank_lines(io_files):
    files, out_path, _ = io_files
    files["stdin"].close()
    files["stdin"] = io.StringIO("\r\nsetenv B two\r\nprintenv B\r\nexit\r\n")
    shell = make_shell(files)
    shell.run()
    assert read(files, out_path) == "% % % two\n% "


def test_run_reports_bad_pipe_count(io_files):
    files, _, err_path = io_files
    files["stdin"].close()
    files["stdin"] = io.StringIO("ls |x\n")
    shell = make_shell(files)
    shell.run()
    assert "x" in read(files, err_path)


def test_numbered_pipe_close_is_idempotent():
    pipe = NumberedPipe.open(3)
    assert pipe.counter == 3
    pipe.close()
    pipe.close()
    with pytest.raises(OSError):
        os.write(pipe.write_fd, b"x")