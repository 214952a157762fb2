"""Tests for the allow list and pending-sender registry."""

from ccchat.agent.security import MAX_PENDING, SenderRegistry

OWNER = "+10000000000"


def test_allow_list_membership():
    reg = SenderRegistry([OWNER, "+2"], owner=OWNER)
    assert reg.is_allowed(OWNER)
    assert reg.is_allowed("+2")
    assert not reg.is_allowed("+3")
    assert reg.allowed_count == 2


def test_empty_sender_never_allowed():
    reg = SenderRegistry(["", OWNER], owner=OWNER)
    assert not reg.is_allowed("")
    assert reg.allowed_count == 1


def test_owner_check():
    reg = SenderRegistry([OWNER, "+2"], owner=OWNER)
    assert reg.is_owner(OWNER)
    assert not reg.is_owner("+2")
    assert not SenderRegistry([], owner="").is_owner("")


class TestPending:
    def test_short_ids_increase_once_per_sender(self):
        reg = SenderRegistry([OWNER])
        a = reg.note_pending("+7", "Alice")
        b = reg.note_pending("+8")
        again = reg.note_pending("+7")

        assert a.short_id == 1
        assert b.short_id == 2
        assert again is a
        assert a.message_count == 2
        assert b.name == "+8"

    def test_name_updated_when_provided(self):
        reg = SenderRegistry([OWNER])
        reg.note_pending("+7")
        entry = reg.note_pending("+7", "Alice")
        assert entry.name == "Alice"

    def test_empty_sender_ignored(self):
        reg = SenderRegistry([OWNER])
        assert reg.note_pending("") is None
        assert reg.list_pending() == []

    def test_list_sorted_by_short_id(self):
        reg = SenderRegistry([OWNER])
        for sender in ("+9", "+5", "+7"):
            reg.note_pending(sender)
        assert [p.sender_id for p in reg.list_pending()] == ["+9", "+5", "+7"]

    def test_approve_moves_sender_to_allow_list(self):
        reg = SenderRegistry([OWNER])
        entry = reg.note_pending("+7", "Alice")

        approved = reg.approve(entry.short_id)
        assert approved is entry
        assert reg.is_allowed("+7")
        assert reg.list_pending() == []
        assert reg.allowed_count == 2

    def test_approve_unknown_id(self):
        reg = SenderRegistry([OWNER])
        reg.note_pending("+7")
        assert reg.approve(42) is None
        assert not reg.is_allowed("+7")

    def test_pending_list_is_capped_oldest_first(self):
        reg = SenderRegistry([OWNER], max_pending=3)
        for n in range(5):
            reg.note_pending(f"+{n}")

        pending = reg.list_pending()
        assert [p.sender_id for p in pending] == ["+2", "+3", "+4"]
        assert [p.short_id for p in pending] == [3, 4, 5]
        assert reg.approve(1) is None

    def test_repeat_sender_does_not_refresh_position(self):
        reg = SenderRegistry([OWNER], max_pending=2)
        reg.note_pending("+1")
        reg.note_pending("+2")
        reg.note_pending("+1")
        reg.note_pending("+3")

        assert [p.sender_id for p in reg.list_pending()] == ["+2", "+3"]

    def test_default_cap(self):
        reg = SenderRegistry([OWNER])
        for n in range(MAX_PENDING + 10):
            reg.note_pending(f"+{n}")
        assert len(reg.list_pending()) == MAX_PENDING
