"""Tests for the branch store."""

import pytest

from conversation_state import (
    BranchStore,
    MAIN_BRANCH_ID,
    Message,
    SYSTEM_AUTHOR,
    USER_AUTHOR,
)
from events import ProtocolEvent


def _msg(id, author="Philosopher", text=None, **kwargs):
    return Message(id=id, author=author, text=text or f"text {id}", **kwargs)


@pytest.fixture
def store():
    store = BranchStore()
    store.append_messages(MAIN_BRANCH_ID, [_msg(f"m{i}") for i in range(1, 5)])
    return store


class TestBranchStoreBasics:

    def test_new_store_has_empty_active_main(self):
        store = BranchStore()
        assert store.active_branch_id == MAIN_BRANCH_ID
        assert store.get_messages() == []
        assert [b.id for b in store.list_branches()] == [MAIN_BRANCH_ID]

    def test_update_message_replaces_by_id(self, store):
        updated = store.update_message(MAIN_BRANCH_ID, "m2", text="changed", is_loading=False)
        assert updated.text == "changed"
        assert store.find_message("m2").text == "changed"
        assert [m.id for m in store.get_messages()] == ["m1", "m2", "m3", "m4"]

    def test_update_unknown_message_returns_none(self, store):
        assert store.update_message(MAIN_BRANCH_ID, "nope", text="x") is None

    def test_remove_and_clear(self, store):
        assert store.remove_message(MAIN_BRANCH_ID, "m1") is True
        assert store.remove_message(MAIN_BRANCH_ID, "m1") is False
        store.clear_messages(MAIN_BRANCH_ID)
        assert store.get_messages() == []

    def test_unknown_branch_raises(self, store):
        with pytest.raises(KeyError):
            store.get_branch("missing")

    def test_mutations_emit_events(self):
        store = BranchStore()
        seen = []
        store.event_bus.subscribe(lambda event, data: seen.append(event))

        store.append_messages(MAIN_BRANCH_ID, [_msg("a")])
        store.update_message(MAIN_BRANCH_ID, "a", text="b")
        store.remove_message(MAIN_BRANCH_ID, "a")

        assert seen == [
            ProtocolEvent.MESSAGE_ADDED,
            ProtocolEvent.MESSAGE_UPDATED,
            ProtocolEvent.MESSAGE_REMOVED,
        ]


class TestFork:

    def test_fork_copies_prefix_without_activating(self, store):
        branch_id = store.fork("m2")

        branch = store.get_branch(branch_id)
        assert [m.id for m in branch.messages] == ["m1", "m2"]
        assert branch.parent_id == "m2"
        assert branch.parent_branch_id == MAIN_BRANCH_ID
        assert branch.name == 'Branch from "text m2..."'
        assert store.active_branch_id == MAIN_BRANCH_ID

    def test_fork_unknown_message_is_noop(self, store):
        assert store.fork("missing") is None
        assert len(store.list_branches()) == 1

    def test_forked_branch_is_isolated(self, store):
        branch_id = store.fork("m2")

        store.append_messages(branch_id, [_msg("b1")])
        store.update_message(branch_id, "m1", text="rewritten")
        store.clear_messages(branch_id)

        main = store.get_messages(MAIN_BRANCH_ID)
        assert [m.id for m in main] == ["m1", "m2", "m3", "m4"]
        assert main[0].text == "text m1"

    def test_parent_mutation_does_not_leak_into_fork(self, store):
        branch_id = store.fork("m3")
        store.update_message(MAIN_BRANCH_ID, "m1", text="changed in main")

        assert store.get_messages(branch_id)[0].text == "text m1"


class TestDeleteBranch:

    def test_main_cannot_be_deleted(self, store):
        assert store.delete_branch(MAIN_BRANCH_ID) is False

    def test_deleting_active_branch_selects_main(self, store):
        branch_id = store.fork("m2")
        store.set_active(branch_id)

        assert store.delete_branch(branch_id) is True
        assert store.active_branch_id == MAIN_BRANCH_ID
        assert not store.has_branch(branch_id)

    def test_child_forked_after_fork_point_keeps_parent_fork_message(self, store):
        b = store.fork("m3")
        store.set_active(b)
        store.append_messages(b, [_msg("b1")])
        c = store.fork("b1")

        store.delete_branch(b)

        child = store.get_branch(c)
        assert child.parent_branch_id == MAIN_BRANCH_ID
        assert child.parent_id == "m3"

    def test_child_forked_inside_shared_prefix_keeps_own_fork_message(self, store):
        b = store.fork("m3")
        store.set_active(b)
        c = store.fork("m2")

        store.delete_branch(b)

        child = store.get_branch(c)
        assert child.parent_branch_id == MAIN_BRANCH_ID
        assert child.parent_id == "m2"


class TestVote:

    def test_vote_toggles(self, store):
        assert store.vote("m1", 1).vote == 1
        assert store.vote("m1", 1).vote is None
        assert store.vote("m1", -1).vote == -1
        assert store.vote("m1", 1).vote == 1

    def test_invalid_vote_value(self, store):
        with pytest.raises(ValueError):
            store.vote("m1", 2)

    def test_vote_unknown_message(self, store):
        assert store.vote("missing", 1) is None


def test_compute_metrics():
    store = BranchStore()
    store.append_messages(MAIN_BRANCH_ID, [
        _msg("u", author=USER_AUTHOR),
        _msg("t1", is_internal_monologue=True),
        _msg("r1", sentiment=0.5, influence_score=3.0, vote=1),
        _msg("t2", author="Scientist", is_internal_monologue=True),
        _msg("r2", author="Scientist", sentiment=-0.5, influence_score=1.0),
        _msg("r3", sentiment=0.0, influence_score=1.0, vote=-1),
        _msg("s", author=SYSTEM_AUTHOR),
        _msg("l", is_loading=True),
    ])

    metrics = store.compute_metrics()

    assert metrics.total_messages == 8
    assert metrics.reply_count == 3
    assert metrics.monologue_count == 2
    assert metrics.system_count == 1
    assert metrics.user_count == 1
    assert metrics.replies_by_author == {"Philosopher": 2, "Scientist": 1}
    assert metrics.average_sentiment == {"Philosopher": 0.25, "Scientist": -0.5}
    assert metrics.total_influence == {"Philosopher": 4.0, "Scientist": 1.0}
    assert (metrics.upvotes, metrics.downvotes) == (1, 1)


def test_export_and_load(store):
    branch_id = store.fork("m3")
    store.set_active(branch_id)

    restored = BranchStore()
    restored.load_dict(store.to_dict())

    assert restored.active_branch_id == branch_id
    assert [m.id for m in restored.get_messages()] == ["m1", "m2", "m3"]
    assert restored.get_branch(branch_id).parent_id == "m3"


def test_load_without_main_branch_fails():
    with pytest.raises(ValueError):
        BranchStore().load_dict({"branches": []})
