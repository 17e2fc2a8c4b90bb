from blekit.addr import Addr, new_addr


def test_new_addr_lowercases():
    a = new_addr("TeSt")
    assert str(a) == "test"


def test_addresses_compare_case_insensitively():
    assert new_addr("AA:BB:CC:00:11:22") == new_addr("aa:bb:cc:00:11:22")
    assert hash(new_addr("AbC")) == hash(Addr("abc"))


def test_different_addresses_differ():
    assert new_addr("one") != new_addr("two")
    assert str(new_addr("one")) == "one"