# netshell

A small collection of network programs built around a pipe-aware shell.
POSIX only.

## The shell

`npshell` reads command lines from standard input, prompting with `% `.
It looks for programs in `bin:.` and understands:

- `cmd1 | cmd2`: ordinary pipes
- `cmd |N`: send output to the first command N lines later
- `cmd !N` (or `cmd1 ! cmd2`): the same, with standard error included
- `cmd > file`: redirect output to a file
- `setenv NAME VALUE`, `printenv NAME`, `exit`

```
npshell
```

From Python, `netshell.shell.Shell(stdin, stdout, stderr, env)` runs the
same loop over any streams. `Shell.execute(line)` runs a single line.
`netshell.parsing.split_commands(line)` gives the parsed `Command` objects.

## Shell servers

Each server takes an optional port. The default is 7001.

- `np-simple [port]`: one forked shell per connection.
- `np-single-proc [port]`: one process serves every client with `select`.
  Besides the shell built-ins it offers `who`, `name NEW`, `tell ID MSG`,
  `yell MSG` and user pipes (`cmd >2` sends output to user 2, `cmd <1`
  reads what user 1 sent). Each user has their own environment.
- `np-multi-proc [port] [--fifo-dir DIR]`: the same features with one
  process per user. The user table sits in shared memory, messages arrive
  by signal, and user pipes are FIFOs named `<sender>_<receiver>` in
  `DIR` (default `./user_pipe/`).

Up to 30 users can be logged in at once.

## Console and web server

- `netshell-console [--test-dir DIR]`: a CGI program. It reads
  `QUERY_STRING` (`h0=..&p0=..&f0=..` up to `h4`/`p4`/`f4`), prints an
  HTML page and connects to every listed shell server. After each prompt
  it sends the next line of `DIR/<file>` (default `test_case`) and streams
  both sides of each session into the page as `<script>` snippets.
- `netshell-cgi-server PORT [--test-dir DIR]`: an HTTP server that answers
  `/panel.cgi` with a session form and `/console.cgi` with the console
  itself. It runs no external programs. Other paths get only the response
  header.

`netshell.cgi_env` turns a raw HTTP request into CGI variables:
`parse_request`, `cgi_environ` and `script_path`.

## SOCKS4 messages

`netshell.socks` handles SOCKS4/4A messages:

- `parse_request` decodes requests, and `build_request` and `build_reply`
  encode them.
- `load_rules` reads firewall files, one rule per line:

  ```
  permit c 140.113.*.*
  permit b *.*.*.*
  ```

- `is_permitted` checks a CONNECT or BIND against the rules. Any matching
  line admits the request.

## What is not included

The package has no HTTP server that runs CGI scripts as separate programs.
It has no echo server. It has no SOCKS proxy server and no console that
connects through a proxy. The SOCKS module only encodes, decodes and
filters messages.

## Tests

```
pip install .[test]
pytest
```