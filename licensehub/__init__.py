"""
licensehub - License-gated session server with chunked file transfer.
"""

__version__ = "1.0.0"
