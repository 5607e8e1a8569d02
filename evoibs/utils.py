"""Run provenance helpers: config hashing and wall-clock timing."""

from __future__ import annotations

import hashlib
import time
from contextlib import contextmanager
from typing import Dict, Generator


def config_hash(yaml_text: str) -> str:
    """SHA-256 of a YAML config string (stored with saved states)."""
    return hashlib.sha256(yaml_text.encode('utf-8')).hexdigest()


@contextmanager
def timer(result: Dict[str, float], key: str = 'elapsed_s') -> Generator[None, None, None]:
    """Store the wall-clock duration of the enclosed block in result[key]."""
    start = time.perf_counter()
    try:
        yield
    finally:
        result[key] = time.perf_counter() - start
