from dataclasses import replace
from datetime import UTC, datetime

import pytest

from app.store.types import DocumentChunk, Integration

COMPANY_ID = "company-1"


def _source(source_id: str = "doc-1", content: str = "x" * 1000, **extra: object) -> dict:
    return {"sourceTable": "sop_documents", "sourceId": source_id, "content": content, **extra}


def _stale_chunk(index: int) -> DocumentChunk:
    return DocumentChunk(
        company_id=COMPANY_ID,
        source_table="sop_documents",
        source_id="doc-1",
        chunk_index=index,
        content=f"old chunk {index}",
        token_count=3,
        embedding=[0.0, 0.0, 0.0],
        embedding_model="text-embedding-3-small",
        embedded_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


def test_ingestion_chunks_embeds_and_replaces_prior_rows(
    client, auth_headers, store, fake_openai
) -> None:
    store.upsert_chunks([_stale_chunk(index) for index in range(5)])
    content = "".join(chr(ord("a") + index % 26) for index in range(1000))

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "chunkSizeChars": 400,
            "chunkOverlapChars": 100,
            "sources": [_source(content=content, sourceVersion="v2", metadata={"lang": "en"})],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["requestId"] == response.headers["x-request-id"]
    assert body["model"] == "text-embedding-3-small"
    assert body["sourceCount"] == 1
    assert body["embeddedChunkCount"] == 3
    assert body["usage"] == {"promptTokens": 15, "totalTokens": 15}

    assert fake_openai.paths() == ["/v1/embeddings"]
    assert fake_openai.authorizations == ["Bearer sk-test-company"]
    _, upstream_body = fake_openai.calls[0]
    assert [len(text) for text in upstream_body["input"]] == [400, 400, 400]

    chunks = store.list_chunks(COMPANY_ID, "sop_documents", "doc-1")
    assert [chunk.chunk_index for chunk in chunks] == [0, 1, 2]
    assert chunks[0].content == content[:400]
    assert chunks[1].content == content[300:700]
    assert chunks[2].content == content[600:]
    assert chunks[2].embedding == [0.1, 0.2, 2.0]
    assert chunks[0].source_version == "v2"
    assert chunks[0].metadata == {"lang": "en"}
    assert chunks[0].token_count == 100

    row = store.usage_logs[0]
    assert row.status == "success"
    assert row.feature_key == "embedding_ingestion"
    assert row.total_tokens == 15
    assert row.metadata == {
        "source_count": 1,
        "embedded_chunk_count": 3,
        "chunk_size_chars": 400,
        "chunk_overlap_chars": 100,
        "budget": {
            "used_today": 0,
            "used_month": 0,
            "daily_budget": 100_000,
            "monthly_budget": 1_000_000,
            "requested": 300,
        },
    }


def test_replace_existing_false_keeps_higher_index_rows(client, auth_headers, store) -> None:
    store.upsert_chunks([_stale_chunk(index) for index in range(5)])

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "sources": [_source(content="short document", replaceExisting=False)],
        },
    )

    assert response.status_code == 200
    chunks = store.list_chunks(COMPANY_ID, "sop_documents", "doc-1")
    assert len(chunks) == 5
    assert chunks[0].content == "short document"
    assert chunks[4].content == "old chunk 4"


def test_default_chunk_parameters_and_clamping(client, auth_headers, store) -> None:
    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "chunkSizeChars": 10,
            "chunkOverlapChars": 5000,
            "sources": [_source(content="y" * 320)],
        },
    )

    assert response.status_code == 200
    metadata = store.usage_logs[0].metadata
    assert metadata["chunk_size_chars"] == 300
    assert metadata["chunk_overlap_chars"] == 299


@pytest.mark.parametrize("literal", ["Infinity", "NaN"])
def test_non_finite_chunk_size_is_rejected(
    client, auth_headers, store, fake_openai, literal
) -> None:
    body = (
        '{"companyId": "%s", "chunkSizeChars": %s, '
        '"sources": [{"sourceTable": "sop_documents", "sourceId": "doc-1", "content": "abc"}]}'
        % (COMPANY_ID, literal)
    )

    response = client.post(
        "/v1/ai/embeddings",
        headers={**auth_headers, "Content-Type": "application/json"},
        content=body,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "request_validation_failed"
    assert fake_openai.calls == []
    assert store.usage_logs[0].status == "error"


def test_too_many_sources_rejected_before_upstream(
    client, auth_headers, store, fake_openai
) -> None:
    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "sources": [_source(source_id=f"doc-{index}") for index in range(26)],
        },
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "too_many_sources"
    assert fake_openai.calls == []
    assert store.usage_logs[0].status == "error"


def test_empty_sources_rejected(client, auth_headers) -> None:
    response = client.post(
        "/v1/ai/embeddings", headers=auth_headers, json={"companyId": COMPANY_ID, "sources": []}
    )

    assert response.status_code == 400


def test_blank_source_identifiers_rejected(client, auth_headers) -> None:
    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={"companyId": COMPANY_ID, "sources": [_source(source_id="  ")]},
    )

    assert response.status_code == 400
    assert "sourceId" in response.json()["error"]["message"]


def test_all_empty_content_rejected(client, auth_headers, fake_openai) -> None:
    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={"companyId": COMPANY_ID, "sources": [_source(content=" \r\n ")]},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "no_content"
    assert fake_openai.calls == []


def test_empty_source_alongside_content_clears_its_rows(client, auth_headers, store) -> None:
    store.upsert_chunks([_stale_chunk(0)])

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "sources": [_source(content=""), _source(source_id="doc-2", content="fresh text")],
        },
    )

    assert response.status_code == 200
    assert response.json()["embeddedChunkCount"] == 1
    assert store.list_chunks(COMPANY_ID, "sop_documents", "doc-1") == []
    assert len(store.list_chunks(COMPANY_ID, "sop_documents", "doc-2")) == 1


def test_batches_are_capped_at_64_inputs(client, auth_headers, fake_openai) -> None:
    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "chunkSizeChars": 300,
            "chunkOverlapChars": 0,
            "sources": [_source(content="z" * (300 * 65))],
        },
    )

    assert response.status_code == 200
    assert response.json()["embeddedChunkCount"] == 65
    assert [len(body["input"]) for _, body in fake_openai.calls] == [64, 1]
    assert response.json()["usage"]["totalTokens"] == 5 * 65


def test_count_mismatch_returns_502_and_writes_nothing(
    client, auth_headers, store, fake_openai
) -> None:
    store.upsert_chunks([_stale_chunk(0)])
    fake_openai.embedding_override = lambda inputs: {
        "data": [{"index": 0, "embedding": [0.5]}],
        "usage": {"prompt_tokens": 1},
    }

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "chunkSizeChars": 400,
            "chunkOverlapChars": 100,
            "sources": [_source()],
        },
    )

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "embedding_count_mismatch"
    chunks = store.list_chunks(COMPANY_ID, "sop_documents", "doc-1")
    assert [chunk.content for chunk in chunks] == ["old chunk 0"]
    row = store.usage_logs[0]
    assert row.status == "error"
    assert row.metadata["failed_source"] == "sop_documents:doc-1"
    assert row.metadata["completed_sources"] == []


def test_upstream_failure_reports_completed_sources(
    client, auth_headers, store, fake_openai
) -> None:
    calls = {"count": 0}

    def flaky(inputs: list[str]) -> dict:
        calls["count"] += 1
        if calls["count"] == 1:
            return {"data": [{"index": 0, "embedding": [1.0]}], "usage": {"prompt_tokens": 2}}
        fake_openai.embedding_status = 500
        return {"error": {"message": "boom"}}

    fake_openai.embedding_override = flaky

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={
            "companyId": COMPANY_ID,
            "sources": [
                _source(source_id="doc-1", content="first"),
                _source(source_id="doc-2", content="second"),
            ],
        },
    )

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "openai_500"
    assert len(store.list_chunks(COMPANY_ID, "sop_documents", "doc-1")) == 1
    assert store.list_chunks(COMPANY_ID, "sop_documents", "doc-2") == []
    metadata = store.usage_logs[0].metadata
    assert metadata["completed_sources"] == ["sop_documents:doc-1"]
    assert metadata["failed_source"] == "sop_documents:doc-2"
    assert metadata["response_status"] == 500


def test_embedding_budget_exceeded(client, auth_headers, store, fake_openai) -> None:
    store.put_ai_settings(replace(store.get_ai_settings(COMPANY_ID), daily_token_budget=10))

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={"companyId": COMPANY_ID, "sources": [_source()]},
    )

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "daily_token_budget_exceeded"
    assert fake_openai.calls == []
    row = store.usage_logs[0]
    assert row.status == "blocked"
    assert row.total_tokens == 250


def test_embeddings_require_company_ai_switch(client, auth_headers, store) -> None:
    store.put_ai_settings(
        replace(store.get_ai_settings(COMPANY_ID), ai_enabled=False)
    )

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={"companyId": COMPANY_ID, "sources": [_source()]},
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "feature_disabled"


def test_embeddings_ignore_per_capability_flags(client, auth_headers, store) -> None:
    store.put_ai_settings(
        replace(
            store.get_ai_settings(COMPANY_ID),
            insights_enabled=False,
            workflow_copilot_enabled=False,
            template_copilot_enabled=False,
        )
    )

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={"companyId": COMPANY_ID, "sources": [_source()]},
    )

    assert response.status_code == 200


def test_integration_embedding_model_is_used(client, auth_headers, store, fake_openai) -> None:
    store.put_integration(
        Integration(
            scope="company",
            scope_id=COMPANY_ID,
            provider_key="openai",
            is_enabled=True,
            config_json={"embedding_model": "text-embedding-3-large", "model": "gpt-4.1"},
        )
    )

    response = client.post(
        "/v1/ai/embeddings",
        headers=auth_headers,
        json={"companyId": COMPANY_ID, "sources": [_source()]},
    )

    assert response.status_code == 200
    assert response.json()["model"] == "text-embedding-3-large"
    assert fake_openai.calls[0][1]["model"] == "text-embedding-3-large"


def test_embeddings_require_membership(client, headers_for, store) -> None:
    response = client.post(
        "/v1/ai/embeddings",
        headers=headers_for("token-outsider"),
        json={"companyId": COMPANY_ID, "sources": [_source()]},
    )

    assert response.status_code == 403
    assert store.usage_logs[0].status == "blocked"
