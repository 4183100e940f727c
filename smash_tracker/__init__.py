"""
smash_tracker - record Super Smash Bros. Ultimate online battles from a video feed.
"""

__version__ = "0.1.0"
