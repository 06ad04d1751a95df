"""Tests for the pid registry."""

from pyherd.registry import PidRegistry


class FakeJob:
    def __init__(self, job_id: str) -> None:
        self.id = job_id


def test_register_and_lookup():
    registry = PidRegistry()
    job = FakeJob("web")

    registry.register(100, job)

    assert registry.owner(100) is job
    assert 100 in registry
    assert len(registry) == 1


def test_unknown_pid_has_no_owner():
    assert PidRegistry().owner(100) is None


def test_deregister():
    registry = PidRegistry()
    job = FakeJob("web")
    registry.register(100, job)

    assert registry.deregister(100) is job
    assert 100 not in registry
    assert registry.deregister(100) is None


def test_deregister_only_for_current_owner():
    """A stale completion must not drop another job's entry."""
    registry = PidRegistry()
    old, new = FakeJob("old"), FakeJob("new")
    registry.register(100, new)

    assert registry.deregister(100, old) is None
    assert registry.owner(100) is new
    assert registry.deregister(100, new) is new


def test_reassigning_pid_keeps_single_owner():
    registry = PidRegistry()
    first, second = FakeJob("a"), FakeJob("b")

    registry.register(100, first)
    registry.register(100, second)

    assert registry.owner(100) is second
    assert registry.pids_for(first) == []
    assert registry.pids_for(second) == [100]


def test_clear():
    registry = PidRegistry()
    registry.register(1, FakeJob("a"))
    registry.register(2, FakeJob("b"))

    registry.clear()

    assert len(registry) == 0


def test_register_returns_displaced_owner():
    registry = PidRegistry()
    first, second = FakeJob("a"), FakeJob("b")

    assert registry.register(100, first) is None
    assert registry.register(100, first) is None
    assert registry.register(100, second) is first
