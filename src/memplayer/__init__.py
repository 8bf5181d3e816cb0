"""memplayer: spaced-repetition flashcards straight from markdown notes."""

from memplayer.consts import VERSION

__version__ = VERSION
