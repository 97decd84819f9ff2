"""
Tests for conversation persistence.
"""

from types import SimpleNamespace

import pytest

from src.voicechat.conversation import InMemoryConversationStore, JsonConversationStore, make_title
from src.voicechat.session_types import Message, Sender


def sample_messages():
    assistant = Message(sender=Sender.ASSISTANT, text="Hi there", metrics_per_second=40.0)
    assistant.add_audio_fragment("UklGRg==")
    return [Message(sender=Sender.USER, text="Hello", complete=True), assistant]


class TestJsonStore:
    """Tests for the JSON file store."""

    def test_save_and_load(self, tmp_path):
        store = JsonConversationStore(tmp_path / "c.json")

        store.save("abc", sample_messages())
        loaded = JsonConversationStore(tmp_path / "c.json").load("abc")

        assert [(m.sender, m.text) for m in loaded] == [
            (Sender.USER, "Hello"),
            (Sender.ASSISTANT, "Hi there"),
        ]
        assert loaded[1].metrics_per_second == 40.0
        assert all(m.complete for m in loaded)

    def test_audio_is_not_persisted(self, tmp_path):
        path = tmp_path / "c.json"
        JsonConversationStore(path).save("abc", sample_messages())

        assert b"UklGRg" not in path.read_bytes()
        assert not JsonConversationStore(path).load("abc")[1].has_audio

    def test_file_size_does_not_grow_with_audio(self, tmp_path):
        path = tmp_path / "c.json"
        messages = sample_messages()
        for _ in range(20):
            messages[1].add_audio_fragment("A" * 100_000)

        JsonConversationStore(path).save("abc", messages)

        assert path.stat().st_size < 1_000

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonConversationStore(tmp_path / "missing.json")

        assert store.list_conversations() == []
        assert store.load("nope") == []

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("{not json")
        store = JsonConversationStore(path)

        assert store.list_conversations() == []

        store.save("abc", sample_messages())
        assert len(store.load("abc")) == 2

    def test_list_newest_first(self, tmp_path, monkeypatch):
        store = JsonConversationStore(tmp_path / "c.json")
        clock = iter([100.0, 200.0, 300.0])
        monkeypatch.setattr("src.voicechat.conversation.time", SimpleNamespace(time=lambda: next(clock)))

        store.save("old", sample_messages())
        store.save("new", sample_messages())
        store.save("old", sample_messages())

        summaries = store.list_conversations()
        assert [s.id for s in summaries] == ["old", "new"]
        assert summaries[0].created_at == 100.0
        assert summaries[0].updated_at == 300.0
        assert summaries[0].message_count == 2

    def test_delete(self, tmp_path):
        store = JsonConversationStore(tmp_path / "c.json")
        store.save("abc", sample_messages())

        assert store.delete("abc")
        assert not store.delete("abc")
        assert store.list_conversations() == []

    def test_preferences(self, tmp_path):
        path = tmp_path / "c.json"
        JsonConversationStore(path).set_preference("live_mode", True)

        store = JsonConversationStore(path)
        assert store.get_preference("live_mode") is True
        assert store.get_preference("capture_enabled", "default") == "default"

    def test_explicit_title(self, tmp_path):
        store = JsonConversationStore(tmp_path / "c.json")

        store.save("abc", sample_messages(), title="Greetings")

        assert store.list_conversations()[0].title == "Greetings"


class TestTitles:
    """Tests for default conversation titles."""

    def test_first_user_message(self):
        assert make_title(sample_messages()) == "Hello"

    def test_truncated(self):
        messages = [Message(sender=Sender.USER, text="word " * 20)]

        title = make_title(messages, max_chars=12)

        assert title.endswith("...")
        assert len(title) <= 15

    def test_no_user_message(self):
        assert make_title([Message(sender=Sender.ASSISTANT, text="hi")]) == "New conversation"


def test_in_memory_store():
    store = InMemoryConversationStore(title_chars=3)

    store.save("abc", sample_messages())

    assert store.list_conversations()[0].title == "Hel..."
    assert len(store.load("abc")) == 2
