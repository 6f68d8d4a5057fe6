from __future__ import annotations

import json
from pathlib import Path

import pytest

from mediator.core.exceptions import DuplicateNameError, UnknownAgentError, UnknownKeyError, UnknownToolError
from mediator.orchestration.tool_policy import (
    PolicyStore,
    build_policy_store,
    destination_matches,
    normalize_tool_name,
)
from mediator.schemas.agents import AgentEndpoint
from mediator.schemas.policy import ApiKey
from tests.helpers.stubs import CHAT_TOKEN, RESEARCH_TOKEN, make_settings


def _research_endpoint(**overrides) -> AgentEndpoint:
    values = {
        "name": "internet_research",
        "invocation_target": "http://agents.internal/research",
        "allowed_destinations": ("https://en.wikipedia.org/wiki/",),
    }
    values.update(overrides)
    return AgentEndpoint(**values)


def test_normalize_tool_name_collapses_separators() -> None:
    assert normalize_tool_name(" Research/Web  Search ") == "research.web.search"
    assert normalize_tool_name("internet_research") == "internet_research"


def test_destination_prefix_respects_segment_boundary() -> None:
    assert destination_matches("https://docs.python.org/3/", "https://docs.python.org")
    assert destination_matches("https://docs.python.org", "https://docs.python.org")
    assert not destination_matches("https://docs.python.org.evil.test/", "https://docs.python.org")
    assert destination_matches("https://en.wikipedia.org/wiki/Python", "https://en.wikipedia.org/wiki/")
    assert not destination_matches("https://en.wikipedia.org/w/index.php", "https://en.wikipedia.org/wiki/")
    assert not destination_matches("https://en.wikipedia.org/wiki/Ping", "https://en.wikipedia.org/wiki/Pi")
    assert destination_matches("https://en.wikipedia.org/wiki/Pi#History", "https://en.wikipedia.org/wiki/Pi")


def test_register_agent_rejects_duplicates() -> None:
    store = PolicyStore()
    store.register_agent(_research_endpoint())

    with pytest.raises(DuplicateNameError):
        store.register_agent(_research_endpoint(name="Internet_Research"))


def test_destination_check_is_default_deny() -> None:
    store = build_policy_store(agents=[_research_endpoint(), _research_endpoint(name="closed", allowed_destinations=())])

    assert store.is_destination_allowed("internet_research", "https://en.wikipedia.org/wiki/Ping")
    assert not store.is_destination_allowed("internet_research", "https://example.com/")
    assert not store.is_destination_allowed("closed", "https://en.wikipedia.org/wiki/Ping")
    with pytest.raises(UnknownAgentError):
        store.is_destination_allowed("missing", "https://en.wikipedia.org/wiki/Ping")


def test_resolve_unknown_tool_raises() -> None:
    store = build_policy_store(agents=[_research_endpoint()])
    assert store.resolve("INTERNET_RESEARCH").name == "internet_research"
    with pytest.raises(UnknownToolError):
        store.resolve("shell")


def test_scope_check_fails_closed() -> None:
    store = build_policy_store(
        agents=[_research_endpoint()],
        keys=[
            (ApiKey(key_id="research", scope=frozenset({"internet_research"})), "secret-a"),
            (ApiKey(key_id="chat"), "secret-b"),
        ],
    )

    assert store.check_key_scope("research", "internet_research")
    assert not store.check_key_scope("chat", "internet_research")
    assert not store.check_key_scope("ghost", "internet_research")


def test_revocation_takes_effect_for_existing_key_objects() -> None:
    key = ApiKey(key_id="research", scope=frozenset({"internet_research"}))
    store = build_policy_store(agents=[_research_endpoint()], keys=[(key, "secret-a")])
    assert store.check_key_scope(key, "internet_research")

    revoked = store.revoke_key("research")

    assert revoked.revoked is True
    assert not store.check_key_scope(key, "internet_research")
    assert store.available_tools(key) == []
    with pytest.raises(UnknownKeyError):
        store.revoke_key("ghost")


def test_authenticate_resolves_tokens() -> None:
    store = PolicyStore.from_settings(make_settings())

    research = store.authenticate(RESEARCH_TOKEN)
    chat = store.authenticate(CHAT_TOKEN)

    assert research is not None and research.key_id == "research-key"
    assert chat is not None and chat.scope == frozenset()
    assert store.authenticate("not-a-key") is None
    assert store.authenticate(None) is None


def test_available_tools_is_scope_intersection() -> None:
    store = PolicyStore.from_settings(make_settings())
    research = store.authenticate(RESEARCH_TOKEN)
    chat = store.authenticate(CHAT_TOKEN)
    assert research is not None and chat is not None

    assert [endpoint.name for endpoint in store.available_tools(research)] == ["internet_research"]
    assert store.available_tools(chat) == []


def test_snapshot_swap_leaves_old_snapshot_untouched() -> None:
    store = PolicyStore.from_settings(make_settings())
    before = store.snapshot

    store.revoke_key("research-key")

    assert before.keys["research-key"].revoked is False
    assert store.snapshot.keys["research-key"].revoked is True
    assert store.snapshot.version > before.version


def test_reload_keeps_revoked_and_missing_keys_revoked(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.json"
    document = {
        "agents": [{"name": "internet_research", "invocation_target": "http://agents.internal/research"}],
        "api_keys": [
            {"key_id": "research-key", "token": "tok-a", "scope": ["internet_research"]},
            {"key_id": "ops-key", "token": "tok-b", "scope": []},
        ],
    }
    policy_file.write_text(json.dumps(document), encoding="utf-8")
    store = PolicyStore.from_settings(make_settings(policy={"policy_file": str(policy_file)}))
    store.revoke_key("research-key")

    document["api_keys"] = [{"key_id": "research-key", "token": "tok-a", "scope": ["internet_research"]}]
    policy_file.write_text(json.dumps(document), encoding="utf-8")
    snapshot = store.reload()

    assert snapshot.keys["research-key"].revoked is True
    assert snapshot.keys["ops-key"].revoked is True
    dropped = store.authenticate("tok-b")
    assert dropped is not None and dropped.revoked is True


def test_reload_without_policy_file_raises() -> None:
    store = PolicyStore.from_settings(make_settings())
    with pytest.raises(FileNotFoundError):
        store.reload()
