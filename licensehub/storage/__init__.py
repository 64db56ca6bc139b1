"""
Storage Module - Persistent User Records

Uses SQLite for storing license users.
"""

from .database import UserStore

__all__ = ['UserStore']
