import os

import pytest

import s3_watch


@pytest.fixture
def watches(state):
    return state.watches


def test_add_keeps_sorted_and_unique(watches, notifier):
    for p in ["/w/c", "/w/a", "/w/b", "/w/a", "/w/c"]:
        watches.add(p)

    assert watches.snapshot() == ["/w/a", "/w/b", "/w/c"]
    assert notifier.added == ["/w/c", "/w/a", "/w/b"]


def test_add_returns_whether_inserted(watches):
    assert watches.add("/w/a") is True
    assert watches.add("/w/a") is False


def test_contains(watches):
    watches.add("/w/a")
    watches.add("/w/b")
    assert "/w/a" in watches
    assert "/w/b" in watches
    assert "/w/ab" not in watches
    assert "/w" not in watches


def test_remove(watches, notifier):
    watches.add("/w/a")
    watches.add("/w/b")

    assert watches.remove("/w/a") is True
    assert watches.remove("/w/a") is False
    assert watches.snapshot() == ["/w/b"]
    assert notifier.removed == ["/w/a"]


def test_sorted_after_mixed_mutations(watches):
    ops = [("add", "/m"), ("add", "/b"), ("add", "/z"), ("remove", "/m"), ("add", "/a"), ("add", "/m/x"), ("remove", "/q")]
    for op, path in ops:
        getattr(watches, op)(path)
        snap = watches.snapshot()
        assert snap == sorted(set(snap))
    assert watches.snapshot() == ["/a", "/b", "/m/x", "/z"]


def test_remove_tree_drops_descendants_only(watches, notifier):
    sep = os.sep
    base = f"{sep}w{sep}sub"
    for p in [base, base + sep + "deep", base + sep + "deep" + sep + "er", base + "-sibling", f"{sep}w"]:
        watches.add(p)

    assert watches.remove_tree(base) is True
    assert watches.snapshot() == sorted([base + "-sibling", f"{sep}w"])
    assert set(notifier.removed) == {base, base + sep + "deep", base + sep + "deep" + sep + "er"}


def test_remove_tree_of_unwatched_path_still_drops_children(watches):
    sep = os.sep
    watches.add(f"{sep}w{sep}sub{sep}child")
    assert watches.remove_tree(f"{sep}w{sep}sub") is False
    assert len(watches) == 0


def test_paths_under(watches):
    sep = os.sep
    for p in [f"{sep}w", f"{sep}w{sep}a", f"{sep}w{sep}a{sep}b", f"{sep}wx"]:
        watches.add(p)
    assert watches.paths_under(f"{sep}w") == [f"{sep}w", f"{sep}w{sep}a", f"{sep}w{sep}a{sep}b"]
    assert watches.paths_under(f"{sep}w{sep}a") == [f"{sep}w{sep}a", f"{sep}w{sep}a{sep}b"]


def test_failed_registration_is_not_recorded(watches, notifier):
    notifier.fail_on.add("/w/full")

    assert watches.add("/w/full") is False
    assert "/w/full" not in watches

    # a later pass retries it
    notifier.fail_on.clear()
    assert watches.add("/w/full") is True
    assert "/w/full" in watches


def test_unwatch_errors_are_swallowed(state, logger):
    class BrokenNotifier:
        def add(self, path):
            pass

        def remove(self, path):
            raise KeyError(path)

    watches = s3_watch.WatchSet(BrokenNotifier(), state.lock, logger)
    watches.add("/w/a")
    assert watches.remove("/w/a") is True
    assert "/w/a" not in watches
