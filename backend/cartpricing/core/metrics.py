from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_discount_applied(source: str) -> None:
    _inc(f"discount_applied.{source}")


def record_discount_removed(source: str) -> None:
    _inc(f"discount_removed.{source}")


def record_price_sync() -> None:
    _inc("price_syncs")


def record_upstream_failure(collaborator: str) -> None:
    _inc(f"upstream_failures.{collaborator}")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
