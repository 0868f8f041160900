"""Test helpers for journalcoach."""

from tests.helpers.fakes import FakeLanguageModel, FakeQueue, RecordingTransport

__all__ = ["FakeLanguageModel", "FakeQueue", "RecordingTransport"]
