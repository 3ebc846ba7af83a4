import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from chat_core.api.service import ChatService, create_service
from chat_core.config.endpoint import EndpointConfig
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Persona
from chat_core.infrastructure.storage.json_store import JsonHistoryRepository
from chat_core.sessions.controller import SessionController


class FakeStream:
    def __init__(self, lines):
        self._lines = lines

    async def chunks(self):
        for line in self._lines:
            yield line

    def abort(self):
        pass

    async def aclose(self):
        pass


class FakeTransport:
    def __init__(self, reply="ok"):
        self._endpoint = EndpointConfig()
        self.reply = reply
        self.sent = []

    @property
    def endpoint(self):
        return self._endpoint

    def configure(self, base_url, model):
        self._endpoint = EndpointConfig(base_url=base_url, model=model)

    async def probe(self):
        return None

    async def send_chat(self, messages):
        self.sent.append(list(messages))
        return FakeStream([json.dumps({"message": {"content": self.reply}}) + "\n", '{"done": true}\n'])


class SettingsStub:
    ollama_base_url = "http://box:11434"
    ollama_model = "phi3:3.8b"
    context_limit = 4

    def __init__(self, root):
        self.storage_root = root


def _service(root, transport=None):
    store = ConversationStore()
    controller = SessionController(store, transport or FakeTransport(), window_limit=10)
    return ChatService(controller, store, JsonHistoryRepository(root=root))


def test_start_generation_creates_chat_and_autosaves():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)

        async def main():
            token = service.start_generation(None, "Hello there")
            await token.wait()
            return token.conversation_id

        cid = asyncio.run(main())
        assert service.store.active_id == cid
        saved = json.loads((Path(d) / "conversations.json").read_text(encoding="utf-8"))
        assert saved[0]["id"] == cid
        assert saved[0]["title"] == "Hello there"
        assert [m["text"] for m in saved[0]["messages"]] == ["Hello there", "ok"]


def test_blank_message_does_not_create_chat():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)
        with pytest.raises(ValidationError):
            service.start_generation(None, "  ")
        assert len(service.store) == 0


def test_load_restores_history_personas_and_endpoint():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)
        service.new_chat()
        service.save_personas([Persona(id="pirate", name="Pirate", instruction_text="Arr.")])
        service.save_settings(" http://10.1.1.1:11434/ ", " mistral ")

        restored = _service(d)
        restored.load()
        assert len(restored.store) == 1
        assert restored.store.active_id == service.store.list_conversations()[0].id
        assert [p.id for p in restored.personas] == ["pirate"]
        assert restored.controller.instruction_text == "Arr."
        assert restored.controller.endpoint == EndpointConfig(base_url="http://10.1.1.1:11434", model="mistral")


def test_default_personas_and_selection():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)
        assert [p.id for p in service.personas] == ["drafter", "chat_agent"]
        assert service.active_persona.id == "drafter"
        assert service.controller.instruction_text.startswith("You are a professional assistant")
        service.select_persona("chat_agent")
        assert service.controller.instruction_text.startswith("You are a friendly")
        with pytest.raises(ValidationError):
            service.select_persona("missing")


def test_save_personas_resyncs_or_falls_back():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)
        service.select_persona("chat_agent")
        service.save_personas([Persona(id="chat_agent", name="Chatty", instruction_text="edited")])
        assert service.active_persona.name == "Chatty"
        assert service.controller.instruction_text == "edited"
        service.save_personas([Persona(id="other", name="Other", instruction_text="")])
        assert service.active_persona.id == "other"
        service.save_personas([])
        assert service.active_persona.id == "drafter"


def test_delete_and_clear_history():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)
        first = service.new_chat()
        second = service.new_chat()
        service.delete_chat(second.id)
        assert service.store.active_id == first.id
        service.clear_history()
        assert len(service.store) == 0
        saved = json.loads((Path(d) / "conversations.json").read_text(encoding="utf-8"))
        assert saved == []


def test_out_of_context_marks_oldest_turns():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)

        async def main():
            cid = service.new_chat().id
            for i in range(6):
                await service.controller.generate(cid, f"q{i}")
            return cid

        cid = asyncio.run(main())
        assert service.out_of_context(cid) == [0, 1]


def test_create_service_uses_settings():
    with tempfile.TemporaryDirectory() as d:
        service = create_service(SettingsStub(d), transport=FakeTransport())
        assert service.controller.window_limit == 4
        status = asyncio.run(service.test_connection())
        assert status.success
        asyncio.run(service.aclose())


def test_load_cancels_running_generations():
    with tempfile.TemporaryDirectory() as d:
        service = _service(d)

        async def main():
            token = service.start_generation(None, "Hello there")
            cid = token.conversation_id
            service.load()
            assert token.cancelled
            assert not service.controller.is_generating(cid)
            assert not service.store.is_generating(cid)
            await token.wait()
            return cid

        cid = asyncio.run(main())
        assert service.store.exists(cid)
        assert not service.controller.is_generating(cid)
