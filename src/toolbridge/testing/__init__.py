"""Test doubles for code built on toolbridge."""

from .stubs import SentCall, StubTransport

__all__ = ["StubTransport", "SentCall"]
