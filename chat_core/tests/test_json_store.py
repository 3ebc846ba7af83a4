import json
import tempfile
from pathlib import Path

import pytest

from chat_core.domain.exceptions import StoreError
from chat_core.domain.models import Conversation, Persona, Role, Turn
from chat_core.infrastructure.storage.json_store import JsonHistoryRepository


def test_conversations_round_trip_newest_first():
    with tempfile.TemporaryDirectory() as d:
        repo = JsonHistoryRepository(root=Path(d) / ".storage")
        older = Conversation(id="chat-old", title="old", turns=(Turn(Role.USER, "hi"),), created_at=1000.0)
        newer = Conversation(
            id="chat-new",
            title="new",
            turns=(Turn(Role.USER, "q"), Turn(Role.ASSISTANT, "a")),
            created_at=2000.0,
        )
        repo.save_conversations([older, newer])
        loaded = repo.load_conversations()
        assert [c.id for c in loaded] == ["chat-new", "chat-old"]
        assert loaded[0] == newer
        raw = json.loads((repo.root / "conversations.json").read_text(encoding="utf-8"))
        assert raw[0]["messages"][1] == {"role": "assistant", "text": "a"}
        assert raw[0]["createdAt"] == 2000.0


def test_missing_files_load_as_empty():
    with tempfile.TemporaryDirectory() as d:
        repo = JsonHistoryRepository(root=d)
        assert repo.load_conversations() == []
        assert repo.load_personas() is None
        assert repo.load_preferences() == {}


def test_legacy_model_role_is_read_as_assistant():
    with tempfile.TemporaryDirectory() as d:
        repo = JsonHistoryRepository(root=d)
        (repo.root / "conversations.json").write_text(
            json.dumps([{"id": "chat-1", "title": "t", "messages": [{"role": "model", "text": "x"}], "createdAt": 1}]),
            encoding="utf-8",
        )
        assert repo.load_conversations()[0].turns == (Turn(Role.ASSISTANT, "x"),)


def test_personas_and_preferences():
    with tempfile.TemporaryDirectory() as d:
        repo = JsonHistoryRepository(root=d)
        personas = [Persona(id="p1", name="One", instruction_text="be terse", input_hint="ask")]
        repo.save_personas(personas)
        assert repo.load_personas() == personas
        repo.save_preferences({"base_url": "http://x:1", "model": "m"})
        assert repo.load_preferences() == {"base_url": "http://x:1", "model": "m"}


def test_corrupt_file_raises_store_error():
    with tempfile.TemporaryDirectory() as d:
        repo = JsonHistoryRepository(root=d)
        (repo.root / "conversations.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(StoreError) as exc:
            repo.load_conversations()
        assert exc.value.code == "STORE_READ_ERROR"
