import threading
import time

from billing_engine.services.locks import KeyedLock


def test_same_key_is_serialized():
    locks = KeyedLock()
    inside = []
    overlaps = []

    def worker():
        with locks.hold(7):
            inside.append(1)
            if len(inside) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert len(locks) == 0


def test_different_keys_do_not_block_each_other():
    locks = KeyedLock()
    entered = threading.Event()

    def other():
        with locks.hold("b"):
            entered.set()

    with locks.hold("a"):
        t = threading.Thread(target=other)
        t.start()
        assert entered.wait(timeout=2)
        t.join()


def test_entries_are_dropped_when_idle():
    locks = KeyedLock()
    with locks.hold(1):
        with locks.hold(2):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0


def test_lock_is_released_on_error():
    locks = KeyedLock()
    try:
        with locks.hold(1):
            raise ValueError("boom")
    except ValueError:
        pass
    assert len(locks) == 0
    with locks.hold(1):
        pass
