from types import SimpleNamespace

from users import KnownUsers


def user(user_id, username=None, full_name="", is_bot=False):
    return SimpleNamespace(id=user_id, username=username, full_name=full_name, is_bot=is_bot)


def test_remember_and_resolve_case_insensitive():
    users = KnownUsers()
    users.remember(user(10, "Alice_1", "Alice"))
    assert users.resolve("@alice_1") == 10
    assert users.resolve("ALICE_1") == 10
    assert users.resolve("bob_22") is None
    assert users.usernames() == {"alice_1": 10}


def test_bots_are_never_remembered():
    users = KnownUsers()
    users.remember(user(99, "helper_bot", "Helper", is_bot=True))
    users.remember(None)
    assert users.usernames() == {}


def test_label_escapes_name_and_falls_back_to_id():
    users = KnownUsers()
    users.remember(user(10, None, "Tom & <Jerry>"))
    assert users.label(10) == '<a href="tg://user?id=10">Tom &amp; &lt;Jerry&gt;</a>'
    assert users.label(11) == '<a href="tg://user?id=11">11</a>'
