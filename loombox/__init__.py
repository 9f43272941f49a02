"""
LoomBox: branching conversations with language models.
Every exchange is a node in a persisted tree: rewind, fork, merge, resume.
"""

__version__ = "0.4.0"
