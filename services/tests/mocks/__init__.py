"""Test mocks package marker for Ruff INP001 compliance."""

from services.tests.mocks.voice_platform import (
    FakeVoiceHandle,
    FakeVoicePlatform,
    wait_until,
)

__all__ = [
    "FakeVoiceHandle",
    "FakeVoicePlatform",
    "wait_until",
]
