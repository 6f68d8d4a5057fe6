from __future__ import annotations

import hashlib
import hmac
import json
import re
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

from ..core.config import AgentEndpointSettings, ApiKeySettings, Settings
from ..core.exceptions import DuplicateNameError, UnknownAgentError, UnknownKeyError, UnknownToolError
from ..core.logging import get_logger
from ..schemas.agents import AgentEndpoint
from ..schemas.policy import ApiKey, PolicyDocument

logger = get_logger(name=__name__)

_NAME_PATTERN = re.compile(r"[\\/\s]+")
_ALIAS_COLLAPSE = re.compile(r"\.+")


def normalize_tool_name(name: str) -> str:
    """Return the normalized identifier used for agent and scope lookups."""
    if not isinstance(name, str):
        raise TypeError("Tool name must be a string")
    collapsed = _NAME_PATTERN.sub(".", name.strip())
    collapsed = _ALIAS_COLLAPSE.sub(".", collapsed)
    return collapsed.strip(".").lower()


def fingerprint_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def destination_matches(url: str, prefix: str) -> bool:
    """Prefix match that refuses to run past a host or path segment boundary."""
    if not prefix or not url.startswith(prefix):
        return False
    if len(url) == len(prefix) or prefix.endswith(("/", "?", "#", "=", "&")):
        return True
    return url[len(prefix)] in "/?#"


@dataclass(frozen=True)
class PolicySnapshot:
    agents: Mapping[str, AgentEndpoint] = field(default_factory=lambda: MappingProxyType({}))
    keys: Mapping[str, ApiKey] = field(default_factory=lambda: MappingProxyType({}))
    token_index: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0

    def with_agents(self, agents: Mapping[str, AgentEndpoint]) -> "PolicySnapshot":
        return replace(self, agents=MappingProxyType(dict(agents)), version=self.version + 1)

    def with_keys(self, keys: Mapping[str, ApiKey], token_index: Mapping[str, str]) -> "PolicySnapshot":
        return replace(
            self,
            keys=MappingProxyType(dict(keys)),
            token_index=MappingProxyType(dict(token_index)),
            version=self.version + 1,
        )


def endpoint_from_settings(entry: AgentEndpointSettings) -> AgentEndpoint:
    return AgentEndpoint(
        name=normalize_tool_name(entry.name),
        invocation_target=entry.invocation_target,
        allowed_destinations=tuple(prefix for prefix in entry.allowed_destinations if prefix),
        timeout_seconds=entry.timeout_seconds,
        max_result_bytes=entry.max_result_bytes,
        description=entry.description,
        parameters=dict(entry.parameters),
        required_arguments=tuple(entry.required_arguments),
    )


def api_key_from_settings(entry: ApiKeySettings) -> ApiKey:
    return ApiKey(
        key_id=entry.key_id,
        scope=frozenset(normalize_tool_name(tool) for tool in entry.scope if tool),
        revoked=entry.revoked,
    )


class PolicyStore:
    """Agent allowlists and API key scopes, held as an immutable snapshot.

    Readers never lock: every lookup works on whichever snapshot was current
    when it started. Writers (registration, revocation, reload) build a new
    snapshot under a process-local lock and swap the reference.
    """

    def __init__(self, snapshot: PolicySnapshot | None = None, *, policy_file: Path | None = None) -> None:
        self._snapshot = snapshot or PolicySnapshot()
        self._policy_file = policy_file
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PolicyStore":
        store = cls(policy_file=settings.policy.policy_file)
        if settings.policy.policy_file is not None:
            store.load(store.read_policy_file())
        else:
            store.load(PolicyDocument(agents=settings.policy.agents, api_keys=settings.policy.api_keys))
        return store

    @property
    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    # ── registration ────────────────────────────────────────────────────────

    def register_agent(self, endpoint: AgentEndpoint) -> None:
        name = normalize_tool_name(endpoint.name)
        with self._write_lock:
            current = self._snapshot
            if name in current.agents:
                raise DuplicateNameError(f"Agent '{name}' is already registered")
            if endpoint.name != name:
                endpoint = endpoint.model_copy(update={"name": name})
            agents = dict(current.agents)
            agents[name] = endpoint
            self._snapshot = current.with_agents(agents)
        logger.info("agent_registered", agent=name, destinations=list(endpoint.allowed_destinations))

    def register_key(self, api_key: ApiKey, *, token: str | None = None) -> None:
        with self._write_lock:
            current = self._snapshot
            if api_key.key_id in current.keys:
                raise DuplicateNameError(f"API key '{api_key.key_id}' is already registered")
            keys = dict(current.keys)
            keys[api_key.key_id] = api_key
            token_index = dict(current.token_index)
            if token:
                token_index[fingerprint_token(token)] = api_key.key_id
            self._snapshot = current.with_keys(keys, token_index)
        logger.info("api_key_registered", key_id=api_key.key_id, scope=sorted(api_key.scope))

    def revoke_key(self, key_id: str) -> ApiKey:
        with self._write_lock:
            current = self._snapshot
            existing = current.keys.get(key_id)
            if existing is None:
                raise UnknownKeyError(f"API key '{key_id}' is not registered")
            revoked = existing.model_copy(update={"revoked": True})
            keys = dict(current.keys)
            keys[key_id] = revoked
            self._snapshot = current.with_keys(keys, current.token_index)
        logger.warning("api_key_revoked", key_id=key_id)
        return revoked

    def load(self, document: PolicyDocument) -> PolicySnapshot:
        """Replace agents and keys with ``document``.

        Keys are never deleted: a key that disappears from the document is
        kept as revoked, and a key revoked earlier stays revoked.
        """
        agents: dict[str, AgentEndpoint] = {}
        for entry in document.agents:
            endpoint = endpoint_from_settings(entry)
            if endpoint.name in agents:
                raise DuplicateNameError(f"Agent '{endpoint.name}' is defined more than once")
            agents[endpoint.name] = endpoint

        with self._write_lock:
            current = self._snapshot
            keys: dict[str, ApiKey] = {}
            token_index: dict[str, str] = {}
            for entry in document.api_keys:
                if entry.key_id in keys:
                    raise DuplicateNameError(f"API key '{entry.key_id}' is defined more than once")
                api_key = api_key_from_settings(entry)
                previous = current.keys.get(entry.key_id)
                if previous is not None and previous.revoked and not api_key.revoked:
                    api_key = api_key.model_copy(update={"revoked": True})
                keys[entry.key_id] = api_key
                token_index[fingerprint_token(entry.token.get_secret_value())] = entry.key_id
            document_ids = set(keys)
            for key_id, previous in current.keys.items():
                if key_id not in keys:
                    keys[key_id] = previous.model_copy(update={"revoked": True})
            for digest, key_id in current.token_index.items():
                if key_id not in document_ids:
                    token_index.setdefault(digest, key_id)
            snapshot = current.with_agents(agents).with_keys(keys, token_index)
            self._snapshot = snapshot
        logger.info("policy_loaded", agents=sorted(agents), keys=len(keys), version=snapshot.version)
        return snapshot

    def read_policy_file(self) -> PolicyDocument:
        if self._policy_file is None:
            raise FileNotFoundError("No policy file configured")
        raw = json.loads(Path(self._policy_file).read_text(encoding="utf-8"))
        return PolicyDocument.model_validate(raw)

    def reload(self) -> PolicySnapshot:
        return self.load(self.read_policy_file())

    # ── lookups ─────────────────────────────────────────────────────────────

    def get_agent(self, name: str) -> AgentEndpoint | None:
        return self._snapshot.agents.get(normalize_tool_name(name))

    def resolve(self, tool_name: str) -> AgentEndpoint:
        endpoint = self.get_agent(tool_name)
        if endpoint is None:
            raise UnknownToolError(f"No agent registered for tool '{tool_name}'")
        return endpoint

    def agents(self) -> list[AgentEndpoint]:
        snapshot = self._snapshot
        return [snapshot.agents[name] for name in sorted(snapshot.agents)]

    def keys(self) -> list[ApiKey]:
        snapshot = self._snapshot
        return [snapshot.keys[key_id] for key_id in sorted(snapshot.keys)]

    def is_destination_allowed(self, agent_name: str, url: str) -> bool:
        """Whether ``url`` falls under one of the agent's allowed prefixes.

        A prefix only matches up to a boundary: the URL must equal the prefix,
        continue with ``/``, ``?`` or ``#``, or the prefix must itself end in a
        separator. ``https://host/wiki/Pi`` therefore does not admit
        ``https://host/wiki/Ping``; end the prefix with ``/`` to allow a subtree.
        """
        endpoint = self.get_agent(agent_name)
        if endpoint is None:
            raise UnknownAgentError(f"Agent '{agent_name}' is not registered")
        return any(destination_matches(url, prefix) for prefix in endpoint.allowed_destinations)

    def authenticate(self, token: str | None) -> ApiKey | None:
        """Resolve a presented token to its key; revoked keys are returned as such."""
        if not token:
            return None
        snapshot = self._snapshot
        digest = fingerprint_token(token)
        for candidate, key_id in snapshot.token_index.items():
            if hmac.compare_digest(candidate, digest):
                return snapshot.keys.get(key_id)
        return None

    def check_key_scope(self, api_key: ApiKey | str, tool_name: str) -> bool:
        """Single choke point consulted before every tool dispatch. Fails closed."""
        key_id = api_key.key_id if isinstance(api_key, ApiKey) else api_key
        current = self._snapshot.keys.get(key_id)
        if current is None or current.revoked:
            return False
        return normalize_tool_name(tool_name) in current.scope

    def available_tools(self, api_key: ApiKey) -> list[AgentEndpoint]:
        snapshot = self._snapshot
        current = snapshot.keys.get(api_key.key_id)
        if current is None or current.revoked:
            return []
        return [snapshot.agents[name] for name in sorted(current.scope) if name in snapshot.agents]


def build_policy_store(
    agents: Iterable[AgentEndpoint] = (),
    keys: Iterable[tuple[ApiKey, str | None]] = (),
) -> PolicyStore:
    store = PolicyStore()
    for endpoint in agents:
        store.register_agent(endpoint)
    for api_key, token in keys:
        store.register_key(api_key, token=token)
    return store


__all__ = [
    "PolicySnapshot",
    "PolicyStore",
    "build_policy_store",
    "destination_matches",
    "fingerprint_token",
    "normalize_tool_name",
]
