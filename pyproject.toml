[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "netshell"
version = "0.1.0"
description = "A pipe-aware command shell, shell servers with chat and user pipes, a CGI console and web server, and SOCKS4 message helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["shell", "numbered pipes", "chat server", "cgi", "socks4"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Shells",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
npshell = "netshell.shell:main"
np-simple = "netshell.simple_server:main"
np-single-proc = "netshell.single_proc_server:main"
np-multi-proc = "netshell.multi_proc_server:main"
netshell-console = "netshell.console:main"
netshell-cgi-server = "netshell.cgi_server:main"

[tool.hatch.build.targets.wheel]
packages = ["netshell"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
