import itertools
import threading

import pytest

from webwatch.registry import JobRegistry


def test_put_get_remove():
    reg = JobRegistry()
    reg.put(1, "h1")
    assert reg.get(1) == "h1"
    assert 1 in reg and len(reg) == 1

    assert reg.remove(1) == "h1"
    assert reg.get(1) is None
    assert reg.remove(1) is None  # idempotent


def test_put_refuses_to_orphan_a_live_handle():
    reg = JobRegistry()
    reg.put(1, "h1")
    reg.put(1, "h1")  # same handle is fine
    with pytest.raises(ValueError):
        reg.put(1, "h2")
    assert reg.get(1) == "h1"


def test_replace_atomically_hands_old_handle_to_factory():
    reg = JobRegistry()
    seen = []

    def make(old):
        seen.append(old)
        return f"h{len(seen)}"

    assert reg.replace_atomically(7, make) is None
    assert reg.replace_atomically(7, make) == "h1"
    assert seen == [None, "h1"]
    assert reg.get(7) == "h2"
    assert len(reg) == 1


def test_replace_atomically_failure_leaves_no_stale_handle():
    reg = JobRegistry()
    reg.put(3, "old")

    def boom(old):
        raise RuntimeError("scheduler refused")

    with pytest.raises(RuntimeError):
        reg.replace_atomically(3, boom)
    assert 3 not in reg


def test_ids_sorted_and_clear():
    reg = JobRegistry()
    for i in (5, 1, 3):
        reg.put(i, f"h{i}")
    assert reg.ids() == [1, 3, 5]
    assert reg.clear() == {1: "h1", 3: "h3", 5: "h5"}
    assert len(reg) == 0


def test_concurrent_replacements_keep_one_handle_per_job():
    reg = JobRegistry()
    retired = []
    lock = threading.Lock()
    counter = itertools.count()

    def make(old):
        if old is not None:
            with lock:
                retired.append(old)
        return f"h{next(counter)}"

    threads = [threading.Thread(target=lambda: [reg.replace_atomically(1, make) for _ in range(50)]) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # 400 handles created, every one but the live one retired exactly once
    assert len(reg) == 1
    assert len(retired) == 399
    assert len(set(retired)) == 399
    assert reg.get(1) not in retired
