import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from windcube.errors import SupersededError
from windcube.scheduling import RecomputeToken, run_wave


def test_run_wave_keeps_item_order_whatever_the_completion_order():
    delays = {"a": 0.05, "b": 0.0, "c": 0.02}

    def work(item):
        time.sleep(delays[item])
        return item.upper()

    with ThreadPoolExecutor(max_workers=3) as pool:
        results = run_wave(["a", "b", "c"], work, key=lambda i: i, on_error=None, executor=pool)

    assert list(results) == ["a", "b", "c"]
    assert list(results.values()) == ["A", "B", "C"]


@pytest.mark.parametrize("use_pool", [False, True])
def test_run_wave_isolates_failures(use_pool):
    def work(item):
        if item == 2:
            raise ValueError("bad item")
        return item * 10

    def on_error(item, exc):
        return f"failed: {exc}"

    pool = ThreadPoolExecutor(max_workers=2) if use_pool else None
    try:
        results = run_wave([1, 2, 3], work, key=lambda i: i, on_error=on_error, executor=pool)
    finally:
        if pool is not None:
            pool.shutdown(wait=True)

    assert results == {1: 10, 2: "failed: bad item", 3: 30}


def test_token_raises_once_superseded():
    token = RecomputeToken(3)
    token.check("before")

    threading.Thread(target=token.supersede).start()
    for _ in range(100):
        if token.superseded:
            break
        time.sleep(0.01)

    assert token.superseded
    with pytest.raises(SupersededError, match="#3"):
        token.check("wave 1")
