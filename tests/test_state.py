import pytest

from portainerstore.model import Endpoint
from portainerstore.state import StateManager


def test_initial_snapshot():
    manager = StateManager()
    assert manager.get_version() == 0
    assert manager.snapshot.endpoints == ()
    assert manager.snapshot.selected_endpoint_id is None


def test_mutate_publishes_new_snapshot():
    manager = StateManager()
    before = manager.snapshot

    with manager.mutate() as state:
        state.endpoints = (Endpoint(1, "local"),)

    assert manager.get_version() == 1
    assert manager.snapshot.endpoints == (Endpoint(1, "local"),)
    assert before.endpoints == ()


def test_observers_notified_before_mutate_returns():
    manager = StateManager()
    seen = []
    manager.subscribe(seen.append)

    with manager.mutate() as state:
        state.server_url = "https://portainer.local"
    assert [s.version for s in seen] == [1]
    assert seen[0].server_url == "https://portainer.local"


def test_failed_mutation_is_discarded():
    manager = StateManager()
    seen = []
    manager.subscribe(seen.append)

    with pytest.raises(ValueError):
        with manager.mutate() as state:
            state.server_url = "https://half.applied"
            raise ValueError("boom")

    assert manager.get_version() == 0
    assert manager.snapshot.server_url is None
    assert seen == []

    # The manager is still usable afterwards
    with manager.mutate() as state:
        state.is_setup = True
    assert manager.snapshot.is_setup is True


def test_hooks_run_in_order_with_previous_snapshot():
    manager = StateManager()
    calls = []

    def first(state, previous):
        calls.append(("first", previous.version))
        state.selected_endpoint_id = 7

    def second(state, previous):
        calls.append(("second", state.selected_endpoint_id))

    manager.add_hook(first)
    manager.add_hook(second)
    with manager.mutate():
        pass

    assert calls == [("first", 0), ("second", 7)]
    assert manager.snapshot.selected_endpoint_id == 7


def test_unsubscribe():
    manager = StateManager()
    seen = []
    unsubscribe = manager.subscribe(seen.append)
    unsubscribe()
    unsubscribe()

    with manager.mutate() as state:
        state.is_setup = True
    assert seen == []


def test_failing_observer_does_not_block_others():
    manager = StateManager()
    seen = []

    def broken(snapshot):
        raise RuntimeError("observer bug")

    manager.subscribe(broken)
    manager.subscribe(seen.append)
    with manager.mutate() as state:
        state.is_setup = True

    assert len(seen) == 1
    assert manager.get_version() == 1
