import pytest

from supportdesk.util.ids import create_id


@pytest.mark.parametrize("prefix", ["org", "user", "cont", "conv", "msg"])
def test_create_id_is_prefixed(prefix):
    ident = create_id(prefix)
    assert ident.startswith(prefix + "_")
    assert ident.split("_", 1)[0] == prefix
    assert len(ident) == len(prefix) + 1 + 32


def test_ids_are_unique():
    assert len({create_id("msg") for _ in range(1000)}) == 1000


def test_unknown_prefix():
    with pytest.raises(ValueError):
        create_id("thread")
