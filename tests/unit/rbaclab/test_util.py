import logging

from rbaclab.util import batch
from rbaclab.util import dedupe
from rbaclab.util import timeit


def test_batch():
    assert batch([1, 2, 3, 4, 5], size=2) == [[1, 2], [3, 4], [5]]
    assert batch([], size=2) == []
    assert batch(iter("abc"), size=10) == [["a", "b", "c"]]


def test_dedupe_keeps_first_seen_order():
    assert dedupe(["get", "list", "get", "watch", "list"]) == ["get", "list", "watch"]


def test_timeit_logs_and_returns(caplog):
    @timeit
    def add(a, b):
        return a + b

    with caplog.at_level(logging.DEBUG, logger="rbaclab.util"):
        assert add(1, 2) == 3
    assert "add took" in caplog.text
    assert add.__name__ == "add"
