"""
Rounds - matchmaking and competitive-ranking core for head-to-head golf.
"""

__version__ = "0.1.0"
