"""
Kanji Daisuki - a Japanese-only social board.

Every post must be written in Japanese script, and every member carries
one kanji as their emblem. Each kanji can be held by at most ten people.
"""

__version__ = "0.3.0"
