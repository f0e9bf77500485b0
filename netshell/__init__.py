"""Pipe-aware shell, chat shell servers, a CGI console and server, and SOCKS4 helpers."""

__version__ = "0.1.0"