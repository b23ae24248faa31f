"""Short, run-unique slugs derived from article headlines."""

from __future__ import annotations

import random
import re
import threading
import time
from typing import Callable
from urllib.parse import urlsplit

_NON_LETTERS = re.compile(r"[^a-z]")
_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

STEM_WORDS = 3
TIME_COMPONENT_LENGTH = 8
RANDOM_COMPONENT_LENGTH = 4


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def slug_stem(headline: str, link: str | None = None) -> str:
    words = (headline or "").split()[:STEM_WORDS]
    stem = _NON_LETTERS.sub("", "".join(words).lower())
    if stem or not link:
        return stem

    last_segment = urlsplit(link).path.rstrip("/").rsplit("/", 1)[-1]
    return _NON_LETTERS.sub("", last_segment.lower())[:24]


def slug_suffix(
    *,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
) -> str:
    millis = int(clock() * 1000)
    time_part = to_base36(millis)[-TIME_COMPONENT_LENGTH:]
    draw = (rng or random).getrandbits(32)
    random_part = to_base36(draw).rjust(RANDOM_COMPONENT_LENGTH, "0")[-RANDOM_COMPONENT_LENGTH:]
    return time_part + random_part


def generate_slug(
    headline: str,
    link: str | None = None,
    *,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
) -> str:
    return slug_stem(headline, link) + slug_suffix(clock=clock, rng=rng)


class SlugGenerator:
    """Issue slugs that never repeat within a single harvest run."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        max_redraws: int = 16,
    ) -> None:
        self._clock = clock
        self._rng = rng or random.Random()
        self._max_redraws = max(1, max_redraws)
        self._issued: set[str] = set()
        self._lock = threading.Lock()

    def __call__(self, headline: str, link: str | None = None) -> str:
        return self.generate(headline, link)

    def generate(self, headline: str, link: str | None = None) -> str:
        with self._lock:
            for _ in range(self._max_redraws):
                slug = generate_slug(headline, link, clock=self._clock, rng=self._rng)
                if slug not in self._issued:
                    self._issued.add(slug)
                    return slug
            # The random term kept colliding; widen it with a sequence number.
            base = generate_slug(headline, link, clock=self._clock, rng=self._rng)
            sequence = len(self._issued)
            while f"{base}{to_base36(sequence)}" in self._issued:
                sequence += 1
            slug = f"{base}{to_base36(sequence)}"
            self._issued.add(slug)
            return slug

    @property
    def issued(self) -> frozenset[str]:
        return frozenset(self._issued)
