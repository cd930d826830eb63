#!/usr/bin/env python3
"""
Backend selection for L4Proxy

One pick per accepted connection, no feedback from relay outcomes.
"""

import itertools
import random
import threading
from typing import Sequence

from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)


class RandomSelector:
    """Uniform random pick backed by OS entropy"""

    policy = "random"

    def __init__(self):
        # SystemRandom draws from os.urandom and keeps no shared state
        self._random = random.SystemRandom()

    def choose(self, backends: Sequence[str]) -> str:
        if not backends:
            raise ValueError("cannot choose from an empty backend list")
        return backends[self._random.randrange(len(backends))]


class RoundRobinSelector:
    """Cycles through the backend list in order"""

    policy = "round_robin"

    def __init__(self):
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def choose(self, backends: Sequence[str]) -> str:
        if not backends:
            raise ValueError("cannot choose from an empty backend list")
        with self._lock:
            index = next(self._counter)
        return backends[index % len(backends)]


_SELECTORS = {
    RandomSelector.policy: RandomSelector,
    RoundRobinSelector.policy: RoundRobinSelector,
}

def create_selector(policy: str = "random"):
    """Build the selector for a configured policy name"""
    try:
        selector = _SELECTORS[policy]()
    except KeyError:
        raise ValueError(f"unknown selection policy: {policy}")
    logger.debug(f"Using {policy} backend selection")
    return selector

_default_selector = RandomSelector()

def choose(backends: Sequence[str]) -> str:
    """Pick a backend uniformly at random"""
    return _default_selector.choose(backends)
