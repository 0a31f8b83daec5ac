"""reciter: spaced-repetition memorization engine with local-first sync."""

from reciter.consts import VERSION

__version__ = VERSION
