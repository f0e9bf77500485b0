"""Turning an HTTP request into the environment a CGI program expects."""

from __future__ import annotations

CGI_KEYS = (
    "REQUEST_METHOD",
    "REQUEST_URI",
    "QUERY_STRING",
    "SERVER_PROTOCOL",
    "HTTP_HOST",
    "SERVER_ADDR",
    "SERVER_PORT",
    "REMOTE_ADDR",
    "REMOTE_PORT",
)


def parse_request(data: bytes | str) -> dict[str, str]:
    """Read the request line and Host header of a raw HTTP request.

    Returns REQUEST_METHOD, REQUEST_URI, QUERY_STRING, SERVER_PROTOCOL and
    HTTP_HOST.  Raises ValueError when the request line has no path.
    """
    text = data.decode("latin-1") if isinstance(data, bytes) else data
    text = text.split("\0", 1)[0]
    lines = text.split("\n")
    request_line = lines[0].rstrip("\r")
    parts = request_line.split(" ")
    if len(parts) < 2 or not parts[1].startswith("/"):
        raise ValueError(f"malformed request line: {request_line!r}")
    method, uri = parts[0], parts[1]
    protocol = parts[2] if len(parts) > 2 else ""

    host = ""
    for header in lines[1:]:
        name, separator, value = header.rstrip("\r").partition(":")
        if separator and name.strip().lower() == "host":
            host = value.strip()
            break

    return {
        "REQUEST_METHOD": method,
        "REQUEST_URI": uri,
        "QUERY_STRING": uri.partition("?")[2],
        "SERVER_PROTOCOL": protocol,
        "HTTP_HOST": host,
    }


def cgi_environ(
    request: dict[str, str],
    server_addr: str,
    server_port: int | str,
    remote_addr: str,
    remote_port: int | str,
) -> dict[str, str]:
    """All CGI variables for one request, missing ones set to ''."""
    environ = dict.fromkeys(CGI_KEYS, "")
    environ.update({key: value for key, value in request.items() if key in environ})
    environ["SERVER_ADDR"] = str(server_addr)
    environ["SERVER_PORT"] = str(server_port)
    environ["REMOTE_ADDR"] = str(remote_addr)
    environ["REMOTE_PORT"] = str(remote_port)
    return environ


def script_path(request_uri: str) -> str:
    """The relative path of the program a request URI names."""
    return "." + request_uri.partition("?")[0]