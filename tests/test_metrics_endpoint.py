from __future__ import annotations

import httpx
import pytest
from langchain_core.messages import AIMessage
from prometheus_client.parser import text_string_to_metric_families

from mediator.main import create_app
from tests.helpers.stubs import (
    CHAT_TOKEN,
    RecordingAgent,
    ScriptedChatModel,
    make_runtime,
    make_settings,
    tool_call_message,
)


def _sample_value(text: str, family_name: str, **labels: str) -> float:
    total = 0.0
    for family in text_string_to_metric_families(text):
        if family.name != family_name:
            continue
        for sample in family.samples:
            if not sample.name.endswith("_total"):
                continue
            if all(sample.labels.get(key) == value for key, value in labels.items()):
                total += sample.value
    return total


@pytest.mark.asyncio
async def test_metrics_exposed_after_policy_denial() -> None:
    settings = make_settings()
    worker = ScriptedChatModel(
        [tool_call_message("internet_research", {"query": "ping"}), AIMessage(content="no tools for you")]
    )
    runtime, _ = make_runtime(settings=settings, worker=worker, agent=RecordingAgent())
    app = create_app(settings, runtime=runtime)

    transport = httpx.ASGITransport(app=app)
    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            before = await client.get("/metrics")
            turn = await client.post("/api/v1/turn", json={"prompt": "ping", "api_key": CHAT_TOKEN})
            after = await client.get("/metrics")

    assert turn.status_code == 200
    assert after.status_code == 200
    assert after.headers["content-type"].startswith("text/plain")
    denied_before = _sample_value(before.text, "mediator_policy_denials", tool="internet_research")
    denied_after = _sample_value(after.text, "mediator_policy_denials", tool="internet_research")
    assert denied_after == denied_before + 1
    completed_before = _sample_value(before.text, "mediator_turns", status="completed")
    completed_after = _sample_value(after.text, "mediator_turns", status="completed")
    assert completed_after == completed_before + 1
