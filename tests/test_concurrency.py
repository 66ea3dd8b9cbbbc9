import base64
import hashlib
import threading

from s3_watch import ActionKind


def digest_of(data: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(data).digest()).decode("ascii")


def run_together(*targets):
    barrier = threading.Barrier(len(targets))
    errors = []

    def wrap(fn):
        def run():
            try:
                barrier.wait(5)
                fn()
            except Exception as e:
                errors.append(e)
        return run

    threads = [threading.Thread(target=wrap(fn)) for fn in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert not any(t.is_alive() for t in threads)
    assert errors == []


def build_tree(root):
    files = []
    for d in ("", "sub", "sub/deep", "other"):
        folder = root / d if d else root
        folder.mkdir(parents=True, exist_ok=True)
        for i in range(5):
            f = folder / f"f{i}.txt"
            f.write_text(f"{d}-{i}")
            files.append(f)
    return files


def test_rescans_and_notifications_race_on_the_same_paths(detector, dispatcher, state, root):
    files = build_tree(root)

    def rescan():
        detector.walker.walk_and_register(str(root))

    def notify():
        for f in files:
            detector.determine_action(str(f))
        detector.determine_action(str(root / "sub"))

    run_together(rescan, rescan, notify, notify)

    copies = [p for kind, p in dispatcher.kinds() if kind is ActionKind.COPY]
    assert sorted(copies) == sorted(str(f) for f in files)

    watched = state.watches.snapshot()
    assert watched == sorted(set(watched))
    assert watched == sorted([str(root), str(root / "sub"), str(root / "sub" / "deep"), str(root / "other")])


def test_concurrent_edits_leave_the_latest_digest(detector, dispatcher, state, root):
    files = build_tree(root)
    detector.walker.walk_and_register(str(root))
    before = len(dispatcher.actions)

    for f in files:
        f.write_text(f.read_text() + "-edited")

    def rescan():
        detector.walker.walk_and_register(str(root))

    def notify():
        for f in reversed(files):
            detector.determine_action(str(f))

    run_together(rescan, notify, rescan, notify)

    new_copies = [p for kind, p in dispatcher.kinds()[before:] if kind is ActionKind.COPY]
    assert sorted(new_copies) == sorted(str(f) for f in files)
    for f in files:
        assert state.fingerprints.get(str(f)) == digest_of(f.read_bytes())
