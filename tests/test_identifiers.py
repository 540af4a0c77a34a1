from cashback_engine.services.identifiers import (
    CLICK_ID_PREFIX,
    generate_click_id,
    looks_like_click_id,
)


def test_click_id_format():
    click_id = generate_click_id()
    assert click_id.startswith(CLICK_ID_PREFIX)
    assert len(click_id) == len(CLICK_ID_PREFIX) + 12
    assert looks_like_click_id(click_id)


def test_click_ids_are_unique():
    ids = {generate_click_id() for _ in range(2000)}
    assert len(ids) == 2000


def test_foreign_ids_are_not_local_format():
    assert not looks_like_click_id(None)
    assert not looks_like_click_id("")
    assert not looks_like_click_id("abc123")
    assert not looks_like_click_id("CLID-SHORT")
    assert not looks_like_click_id("CLID-0000000000O1")
