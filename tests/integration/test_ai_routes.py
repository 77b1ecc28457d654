"""Integration tests for the narrative AI endpoints

The provider is a scripted FakeInvoker; everything else (routing, validation,
context assembly, rate limits, quotas, usage log) is real.
"""

from __future__ import annotations

import time

from storyloom.governance.quota import QuotaService
from storyloom.governance.rate_limit import EndpointClass
from storyloom.governance.usage import UsageRecord, UsageRepository
from storyloom.infrastructure.settings import GEMINI_EXTRACTION_MODEL
from storyloom.prompts.results import (
    CanonDiffResult,
    ExpansionResult,
    MergeProposalResult,
    StructureResult,
    SuggestionResult,
)

PATH = [
    {"node_id": "n1", "title": "Arrival", "content": "The ferry docks at midnight."},
    {"node_id": "n2", "content": "Mara finds the ledger."},
]

SUGGESTIONS = {
    "ghost_nodes": [
        {"title": "The Ledger Burns", "summary": "Mara destroys it.", "tone": "tense", "direction_type": "aligned"}
    ],
    "inline_suggestions": [],
}


def _suggest_body(**overrides):
    body = {"system_prompt": "A noir mystery in a drowned city.", "active_path": PATH}
    body.update(overrides)
    return body


def test_suggest_returns_parsed_result(client, fake_invoker):
    fake_invoker.structured[SuggestionResult] = SUGGESTIONS

    response = client.post("/api/ai/suggest", json=_suggest_body())

    assert response.status_code == 200
    data = response.json()
    assert data["ghost_nodes"][0]["title"] == "The Ledger Burns"
    assert data["inline_suggestions"] == []
    assert data["model"] == "fake-text"
    assert response.headers["X-RateLimit-Limit"] == "30"


def test_suggest_clamps_counts(client, fake_invoker):
    client.post("/api/ai/suggest", json=_suggest_body(num_suggestions=50))
    client.post("/api/ai/suggest", json=_suggest_body(num_suggestions=0))

    first, second = fake_invoker.prompts("structured")
    assert "Generate exactly 10 ghost node suggestion(s)" in first
    assert "Generate exactly 3 ghost node suggestion(s)" in second


def test_suggest_states_split_for_profile(client, fake_invoker):
    body = _suggest_body(num_suggestions=5, creator_profile={"exploration_ratio": 0.4})

    client.post("/api/ai/suggest", json=body)

    assert "Generate 3 aligned suggestion(s) and 2 exploratory suggestion(s)." in fake_invoker.prompts("structured")[0]


def test_suggest_validation_errors(client, fake_invoker):
    empty_path = client.post("/api/ai/suggest", json=_suggest_body(active_path=[]))
    blank_prompt = client.post("/api/ai/suggest", json=_suggest_body(system_prompt="   "))

    assert empty_path.status_code == 422
    assert "active_path" in empty_path.json()["invalid_fields"]
    assert blank_prompt.status_code == 422
    assert blank_prompt.json()["invalid_fields"] == ["system_prompt"]
    assert fake_invoker.calls == []


def test_requires_identity(make_client, fake_invoker):
    anonymous = make_client(headers={})

    response = anonymous.post("/api/ai/suggest", json=_suggest_body())

    assert response.status_code == 401
    assert fake_invoker.calls == []


def test_oversized_body_rejected(client, fake_invoker):
    nodes = [{"node_id": f"n{i}", "content": "x" * 5000} for i in range(12)]

    response = client.post("/api/ai/suggest", json=_suggest_body(active_path=nodes))

    assert response.status_code == 413
    assert fake_invoker.calls == []


def test_unparseable_response_is_502(client, fake_invoker, unparseable):
    fake_invoker.structured[SuggestionResult] = unparseable

    response = client.post("/api/ai/suggest", json=_suggest_body())

    assert response.status_code == 502
    assert response.json() == {
        "detail": "Failed to parse AI response",
        "error_type": "unparseable_response",
    }


def test_expand(client, fake_invoker):
    fake_invoker.structured[ExpansionResult] = {
        "expansions": [{"content": "Longer", "approach": "detail", "tone": "moody"}]
    }

    response = client.post(
        "/api/ai/expand",
        json={
            "system_prompt": "Noir",
            "node": PATH[1],
            "expansion_type": "alternatives",
            "context_path": PATH[:1],
            "num_variants": 9,
        },
    )

    assert response.status_code == 200
    assert response.json()["expansions"][0]["content"] == "Longer"
    assert "Generate exactly 5 variant(s)." in fake_invoker.prompts("structured")[0]


def test_expand_rejects_unknown_type(client):
    response = client.post(
        "/api/ai/expand",
        json={"system_prompt": "Noir", "node": PATH[1], "expansion_type": "summarize"},
    )
    assert response.status_code == 422


def test_canon_diff(client, fake_invoker):
    fake_invoker.structured[CanonDiffResult] = {
        "suggested_updates": [{"field": "tone", "current_value": "bleak", "suggested_value": "hopeful"}],
        "reasoning": "The ending lifts.",
        "confidence": 0.7,
    }

    response = client.post(
        "/api/ai/canon-diff",
        json={"system_prompt": "Noir", "current_canon": {"tone": "bleak"}, "recent_nodes": PATH},
    )

    assert response.status_code == 200
    assert response.json()["confidence"] == 0.7
    assert response.json()["suggested_updates"][0]["suggested_value"] == "hopeful"


def test_merge_propose(client, fake_invoker):
    fake_invoker.structured[MergeProposalResult] = {"merged_content": "Both paths meet at the lighthouse."}

    response = client.post(
        "/api/ai/merge-propose",
        json={
            "system_prompt": "Noir",
            "merge_point_node_id": "n0",
            "branch_a": {"path": PATH[:1]},
            "branch_b": {"path": PATH[1:], "canon": {"tone": "hopeful"}},
        },
    )

    assert response.status_code == 200
    assert response.json()["merged_content"] == "Both paths meet at the lighthouse."
    assert response.json()["conflicts"] == []


def test_generate_structure_uses_stored_profile(client, seed, fake_invoker):
    seed.profile("user-1", preferred_genres=["gothic"])
    fake_invoker.structured[StructureResult] = {"nodes": [{"title": "The Awakening", "summary": "It begins."}]}

    response = client.post("/api/ai/generate-structure", json={"story_context": "A lighthouse keeper", "num_nodes": 4})

    assert response.status_code == 200
    assert response.json()["nodes"][0]["title"] == "The Awakening"
    assert response.json()["model"] == GEMINI_EXTRACTION_MODEL
    prompt = fake_invoker.prompts("structured")[0]
    assert "exactly 4 story beats" in prompt
    assert "Preferred genres: gothic" in prompt


def test_suggest_from_timeline_assembles_context(client, seed, fake_invoker):
    seed.timeline(system_prompt="Drowned-city noir")
    seed.chain(["root", "middle", "leaf"])
    seed.canon("b1", setting="Sunken Venice")
    seed.profile("user-1", disliked_elements=["amnesia"])
    fake_invoker.structured[SuggestionResult] = SUGGESTIONS

    response = client.post(
        "/api/ai/suggest-from-timeline",
        json={"timeline_id": "tl-1", "node_id": "leaf", "branch_id": "b1"},
    )

    assert response.status_code == 200
    prompt = fake_invoker.prompts("structured")[0]
    assert prompt.startswith("SYSTEM CONTEXT:\nDrowned-city noir")
    assert '"setting": "Sunken Venice"' in prompt
    assert "in place of: amnesia" in prompt
    assert prompt.index("(root)") < prompt.index("(middle)") < prompt.index("(leaf)")


def test_expand_from_timeline_targets_node(client, seed, fake_invoker):
    seed.timeline()
    seed.chain(["root", "leaf"])

    response = client.post(
        "/api/ai/expand-from-timeline",
        json={"timeline_id": "tl-1", "node_id": "leaf", "expansion_type": "expand"},
    )

    assert response.status_code == 200
    prompt = fake_invoker.prompts("structured")[0]
    assert "TARGET NODE (leaf):" in prompt
    assert "CONTEXT PATH:\n[1] (root)" in prompt


def test_timeline_without_system_prompt_is_400(client, seed):
    seed.timeline(system_prompt=None)
    seed.node("n1")

    response = client.post("/api/ai/suggest-from-timeline", json={"timeline_id": "tl-1", "node_id": "n1"})

    assert response.status_code == 400
    assert response.json() == {
        "detail": "Timeline has no system_prompt configured",
        "error_type": "invalid_parameters",
    }


def test_timeline_unknown_node_is_404(client, seed):
    seed.timeline()

    response = client.post("/api/ai/suggest-from-timeline", json={"timeline_id": "tl-1", "node_id": "ghost"})

    assert response.status_code == 404
    assert response.json()["error_type"] == "node_not_found"


def test_usage_is_recorded_per_request(client, fake_invoker):
    client.post("/api/ai/suggest", json=_suggest_body())
    client.post("/api/ai/suggest", json=_suggest_body())

    assert client.app.state.usage_recorder.flush(timeout=5.0)
    assert UsageRepository().count_since("user-1", 0) == 2


def test_ai_rate_limit(make_client):
    client = make_client(limits={EndpointClass.AI: 3})

    statuses = [client.post("/api/ai/suggest", json=_suggest_body()).status_code for _ in range(4)]

    assert statuses == [200, 200, 200, 429]


def test_rate_limit_rejection_payload(make_client):
    client = make_client(limits={EndpointClass.AI: 1})
    client.post("/api/ai/suggest", json=_suggest_body())

    response = client.post("/api/ai/suggest", json=_suggest_body())

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    body = response.json()
    assert body["error_type"] == "rate_limited"
    assert body["detail"] == "Too many requests. Please try again later."
    assert body["retry_after"] == 60
    assert body["limit"] == 1


def test_rate_limit_is_per_user(make_client):
    client = make_client(limits={EndpointClass.AI: 1})

    first = client.post("/api/ai/suggest", json=_suggest_body())
    other_user = client.post("/api/ai/suggest", json=_suggest_body(), headers={"X-User-Id": "user-2"})

    assert first.status_code == 200
    assert other_user.status_code == 200


def test_quota_headers_and_rejection(make_client, db_path):
    client = make_client(
        quota_enabled=True,
        quota_service=QuotaService(default_daily=2, default_monthly=100),
    )
    repository = UsageRepository()
    repository.insert(UsageRecord("user-1", "/api/ai/suggest", created_at=time.time()))

    allowed = client.post("/api/ai/suggest", json=_suggest_body())
    repository.insert(UsageRecord("user-1", "/api/ai/suggest", created_at=time.time()))
    rejected = client.post("/api/ai/suggest", json=_suggest_body())

    assert allowed.status_code == 200
    assert allowed.headers["X-RateLimit-Limit-Daily"] == "2"
    assert allowed.headers["X-RateLimit-Remaining-Daily"] == "1"
    assert rejected.status_code == 429
    body = rejected.json()
    assert body["error_type"] == "quota_exceeded"
    assert body["period"] == "daily"
    assert body["limit"] == 2
    assert body["detail"] == "Daily quota exceeded. Limit: 2 requests."
    assert "reset_at" in body


def test_timeline_routes_reject_other_users(client, seed, fake_invoker):
    seed.timeline()
    seed.chain(["root", "leaf"])
    body = {"timeline_id": "tl-1", "node_id": "leaf"}

    suggest = client.post("/api/ai/suggest-from-timeline", json=body, headers={"X-User-Id": "user-2"})
    expand = client.post(
        "/api/ai/expand-from-timeline",
        json={**body, "expansion_type": "expand"},
        headers={"X-User-Id": "user-2"},
    )

    for response in (suggest, expand):
        assert response.status_code == 404
        assert response.json()["error_type"] == "timeline_not_found"
    assert fake_invoker.calls == []


def test_quota_disabled_sends_unlimited_headers(client, fake_invoker):
    response = client.post("/api/ai/suggest", json=_suggest_body())

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit-Daily"] == "999999"
    assert response.headers["X-RateLimit-Remaining-Monthly"] == "999999"
