from chat_core.config.endpoint import EndpointConfig, normalize_base_url
from chat_core.config.settings import ChatSettings
from chat_core.domain.models import Conversation, OutboundMessage, Persona, Role, Turn, derive_title
from chat_core.prompts import load_default_personas


def test_models_exist():
    turn = Turn(role=Role.USER, text="hi")
    assert turn.role is Role.USER
    conv = Conversation(id="chat-1", turns=(turn,))
    assert conv.last_turn == turn
    assert conv.title == "New Conversation"
    assert OutboundMessage(Role.SYSTEM, "x").to_payload() == {"role": "system", "content": "x"}


def test_derive_title():
    assert derive_title("short") == "short"
    assert derive_title("a" * 40) == "a" * 40
    assert derive_title("b" * 41) == "b" * 40 + "..."


def test_persona_dict_keys():
    p = Persona(id="x", name="X", instruction_text="sys", input_hint="type here")
    assert p.to_dict() == {"id": "x", "name": "X", "prompt": "sys", "placeholder": "type here"}
    assert Persona.from_dict(p.to_dict()) == p


def test_default_personas_load():
    personas = load_default_personas()
    assert [p.name for p in personas] == ["Formal Drafter", "Friendly Chat Agent"]
    assert all(p.instruction_text and p.input_hint for p in personas)


def test_endpoint_normalization():
    assert normalize_base_url(" http://localhost:11434// ") == "http://localhost:11434"
    cfg = EndpointConfig(base_url="http://h:1/")
    assert cfg.tags_url == "http://h:1/api/tags"
    assert cfg.with_model(" llama3 ").model == "llama3"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://remote:11434/")
    monkeypatch.setenv("OLLAMA_MODEL", "llama3")
    monkeypatch.setenv("CONTEXT_LIMIT", "6")
    s = ChatSettings()
    assert s.ollama_base_url == "http://remote:11434"
    assert s.ollama_model == "llama3"
    assert s.context_limit == 6
