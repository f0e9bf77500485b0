import pytest

from netshell.socks import (
    BIND,
    CONNECT,
    REQUEST_GRANTED,
    REQUEST_REJECTED,
    SOCKS_VERSION,
    FirewallRule,
    build_reply,
    build_request,
    ip_matches,
    is_permitted,
    load_rules,
    parse_request,
    parse_rule,
)


def test_request_round_trip():
    request = parse_request(build_request(8080, "140.113.1.2"))
    assert request.version == SOCKS_VERSION
    assert request.command == CONNECT
    assert request.command_name == "CONNECT"
    assert request.port == 8080
    assert request.address == "140.113.1.2"
    assert request.domain is None
    assert request.user_id == ""


def test_request_wire_bytes():
    assert build_request(80, "127.0.0.1")[:8] == bytes([4, 1, 0, 80, 127, 0, 0, 1])


def test_bind_command_name():
    data = bytes([4, BIND, 0, 21, 10, 0, 0, 1]) + b"\0"
    assert parse_request(data).command_name == "BIND"


def test_socks4a_domain():
    data = bytes([4, 1, 0, 80, 0, 0, 0, 1]) + b"user\0example.com\0"
    request = parse_request(data)
    assert request.domain == "example.com"
    assert request.user_id == "user"


def test_socks4a_without_domain_is_rejected():
    with pytest.raises(ValueError):
        parse_request(bytes([4, 1, 0, 80, 0, 0, 0, 1]) + b"user\0")


def test_short_request():
    with pytest.raises(ValueError):
        parse_request(b"\x04\x01\x00")


def test_build_request_rejects_bad_address():
    with pytest.raises(ValueError):
        build_request(80, "not-an-ip")


def test_grant_reply_bytes():
    assert build_reply(True) == bytes([0, 90, 0, 0, 0, 0, 0, 0])


def test_reject_reply_status():
    reply = build_reply(False)
    assert reply[1] == REQUEST_REJECTED
    assert len(reply) == 8


def test_reply_carries_port():
    reply = build_reply(True, 0x1234)
    assert reply[1] == REQUEST_GRANTED
    assert int.from_bytes(reply[2:4], "big") == 0x1234


def test_reply_port_out_of_range():
    with pytest.raises(ValueError):
        build_reply(True, 70000)


def test_parse_rule():
    rule = parse_rule("permit c 140.113.*.*")
    assert rule == FirewallRule("permit", "c", "140.113.*.*")


def test_parse_rule_missing_field():
    with pytest.raises(ValueError):
        parse_rule("permit c")


def test_load_rules(tmp_path):
    path = tmp_path / "socks.conf"
    path.write_text("permit c 140.113.*.*\n\npermit b *.*.*.*\nbroken\n")
    rules = load_rules(path)
    assert [rule.command for rule in rules] == ["c", "b"]


def test_load_rules_missing_file(tmp_path):
    assert load_rules(tmp_path / "absent.conf") == []


@pytest.mark.parametrize(
    "pattern, address, expected",
    [
        ("140.113.*.*", "140.113.5.6", True),
        ("140.113.*.*", "140.114.5.6", False),
        ("*.*.*.*", "8.8.8.8", True),
        ("10.0.0.1", "10.0.0.1", True),
        ("10.0.0.1", "10.0.0.2", False),
    ],
)
def test_ip_matches(pattern, address, expected):
    assert ip_matches(pattern, address) is expected


def test_is_permitted_by_command():
    rules = [parse_rule("permit c 140.113.*.*")]
    assert is_permitted(rules, "CONNECT", "140.113.0.1")
    assert not is_permitted(rules, "BIND", "140.113.0.1")
    assert not is_permitted(rules, "CONNECT", "8.8.8.8")


def test_is_permitted_without_rules():
    assert not is_permitted([], "CONNECT", "127.0.0.1")


def test_is_permitted_unknown_command():
    with pytest.raises(ValueError):
        is_permitted([], "UDP", "127.0.0.1")