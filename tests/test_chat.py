import pytest

from netshell.chat import (
    DEFAULT_NICKNAME,
    UserRegistry,
    login_message,
    logout_message,
    welcome_banner,
)


def _registry(count=2, capacity=30):
    registry = UserRegistry(capacity)
    inboxes = {}
    for offset in range(count):
        box = []
        user = registry.add("127.0.0.1", 4000 + offset, box.append)
        inboxes[user.uid] = box
    return registry, inboxes


def test_add_assigns_lowest_free_id():
    registry, _ = _registry(3)
    assert [user.uid for user in registry] == [1, 2, 3]
    registry.remove(2)
    user = registry.add("10.0.0.1", 1234, lambda text: None)
    assert user.uid == 2
    assert user.nickname == DEFAULT_NICKNAME


def test_add_when_full_raises():
    registry, _ = _registry(2, capacity=2)
    with pytest.raises(RuntimeError):
        registry.add("127.0.0.1", 9, lambda text: None)


def test_zero_capacity_rejected():
    with pytest.raises(ValueError):
        UserRegistry(0)


def test_remove_unknown_raises():
    registry, _ = _registry(1)
    with pytest.raises(KeyError):
        registry.remove(5)


def test_exists_and_get():
    registry, _ = _registry(1)
    assert registry.exists(1)
    assert not registry.exists(0)
    assert not registry.exists(31)
    assert registry.get(2) is None
    assert registry.get(1).port == 4000


def test_new_user_env_has_default_path():
    registry, _ = _registry(1)
    assert registry.get(1).env["PATH"] == "bin:."


def test_who_marks_caller():
    registry, _ = _registry(2)
    lines = registry.who(2).splitlines()
    assert lines[0] == "<ID>\t<nickname>\t<IP:port>\t<indicate me>"
    assert lines[1] == "1\t(no name)\t127.0.0.1:4000"
    assert lines[2] == "2\t(no name)\t127.0.0.1:4001\t<-me"


def test_rename_broadcasts_to_everyone():
    registry, inboxes = _registry(2)
    assert registry.rename(1, "alice") is True
    assert registry.get(1).nickname == "alice"
    expected = "*** User from 127.0.0.1:4000 is named 'alice'. ***\n"
    assert inboxes[1] == [expected]
    assert inboxes[2] == [expected]


def test_rename_to_taken_name_fails():
    registry, inboxes = _registry(2)
    registry.rename(1, "alice")
    inboxes[1].clear()
    inboxes[2].clear()
    assert registry.rename(2, "alice") is False
    assert registry.get(2).nickname == DEFAULT_NICKNAME
    assert inboxes[2] == ["*** User 'alice' already exists. ***\n"]
    assert inboxes[1] == []


def test_rename_to_own_name_fails():
    registry, _ = _registry(1)
    registry.rename(1, "bob")
    assert registry.rename(1, "bob") is False


def test_tell_reaches_only_target():
    registry, inboxes = _registry(3)
    assert registry.tell(1, 3, ["hello", "there"]) is True
    assert inboxes[3] == ["*** (no name) told you ***: hello there\n"]
    assert inboxes[1] == []
    assert inboxes[2] == []


def test_tell_missing_user_reports_error():
    registry, inboxes = _registry(1)
    assert registry.tell(1, 7, ["hi"]) is False
    assert inboxes[1] == ["*** Error: user #7 does not exist yet. ***\n"]


def test_yell_reaches_everyone():
    registry, inboxes = _registry(2)
    registry.rename(2, "bob")
    for box in inboxes.values():
        box.clear()
    registry.yell(2, ["good", "morning"])
    message = "*** bob yelled ***: good morning\n"
    assert inboxes[1] == [message]
    assert inboxes[2] == [message]


def test_broadcast_in_id_order():
    registry = UserRegistry()
    seen = []
    users = [
        registry.add("127.0.0.1", 5000 + n, lambda text, n=n: seen.append((n, text)))
        for n in range(3)
    ]
    seen.clear()
    registry.broadcast("x")
    assert [user.uid for user in users] == [1, 2, 3]
    assert seen == [(0, "x"), (1, "x"), (2, "x")]


def test_banner_and_login_messages():
    banner = welcome_banner()
    assert banner.splitlines() == [
        "****************************************",
        "** Welcome to the information server. **",
        "****************************************",
    ]
    registry, _ = _registry(1)
    user = registry.get(1)
    assert login_message(user) == "*** User '(no name)' entered from 127.0.0.1:4000. ***\n"
    registry.rename(1, "carol")
    assert logout_message(user) == "*** User 'carol' left. ***\n"