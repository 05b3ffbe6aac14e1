from unittest.mock import MagicMock

import pytest

from marketing_agent.config import OpenAIConfig
from marketing_agent.db.models import ContentFragment
from marketing_agent.errors import ExternalServiceError, ValidationError
from marketing_agent.services.embeddings import EmbeddingClient
from marketing_agent.services.rag_ingest import IngestSource, RagIngestor, chunk_text


def _fragments(session, source_id):
    session.expire_all()
    return (
        session.query(ContentFragment)
        .filter_by(source_id=source_id)
        .order_by(ContentFragment.chunk_index)
        .all()
    )


def test_chunk_text_packs_paragraphs():
    text = "first paragraph\r\n\r\nsecond paragraph\n\n\nthird"
    assert chunk_text(text, max_length=35) == ["first paragraph\n\nsecond paragraph", "third"]


def test_chunk_text_hard_splits_long_paragraph():
    chunks = chunk_text("short\n\n" + "y" * 25, max_length=10)
    assert chunks == ["short", "y" * 10, "y" * 10, "y" * 5]


def test_chunk_text_empty():
    assert chunk_text("   \n\n  ") == []


def test_empty_text_is_noop(session, organization):
    outcome = RagIngestor(session).ingest(IngestSource(
        organization_id="org-1", source_type="project-doc", source_id="doc-1", text="  ",
    ))
    assert outcome.noop is True
    assert _fragments(session, "doc-1") == []


def test_unknown_source_type(session, organization):
    with pytest.raises(ValidationError):
        RagIngestor(session).ingest(IngestSource(
            organization_id="org-1", source_type="rumor", source_id="x", text="hello",
        ))


def test_reingest_is_idempotent_and_shrinks(session, organization):
    ingestor = RagIngestor(session)
    long_text = "\n\n".join(f"paragraph {i} " + "z" * 400 for i in range(3))

    first = ingestor.ingest_project_document("org-1", "doc-1", long_text, title="Annual report")
    assert first.chunk_count == 3
    ids_before = [f.id for f in _fragments(session, "doc-1")]

    again = ingestor.ingest_project_document("org-1", "doc-1", long_text, title="Annual report")
    assert again.chunk_count == 3
    assert again.deleted_count == 0
    assert [f.id for f in _fragments(session, "doc-1")] == ids_before

    shrunk = ingestor.ingest_project_document("org-1", "doc-1", "Just one line now")
    assert shrunk.chunk_count == 1
    assert shrunk.deleted_count == 2
    fragments = _fragments(session, "doc-1")
    assert [f.chunk_index for f in fragments] == [0]
    assert fragments[0].text_content == "Just one line now"
    assert fragments[0].category == "general"
    assert "ingestedAt" in fragments[0].meta


def test_embedding_failure_stores_null_vectors(session, organization):
    embedder = MagicMock()
    embedder.embed.side_effect = ExternalServiceError("HTTP 500", service="embedding")

    outcome = RagIngestor(session, embedder=embedder).ingest_project_document("org-1", "doc-2", "Some text")

    assert outcome.chunk_count == 1
    assert outcome.embedded_count == 0
    assert _fragments(session, "doc-2")[0].embedding is None


def test_undecodable_embedding_response_stores_null_vectors(session, organization):
    resp = MagicMock(ok=True, status_code=200)
    resp.json.side_effect = ValueError("Expecting value")
    http = MagicMock()
    http.post.return_value = resp
    embedder = EmbeddingClient(OpenAIConfig(api_key="k"), http=http)

    outcome = RagIngestor(session, embedder=embedder).ingest_project_document("org-1", "doc-4", "Some text")

    assert outcome.chunk_count == 1
    assert outcome.embedded_count == 0
    assert _fragments(session, "doc-4")[0].embedding is None


def test_embeddings_are_stored_per_chunk(session, organization):
    embedder = MagicMock()
    embedder.embed.side_effect = lambda chunks: [[0.1, 0.2, 0.3] for _ in chunks]

    outcome = RagIngestor(session, embedder=embedder).ingest_project_document("org-1", "doc-3", "Some text")

    assert outcome.embedded_count == 1
    assert _fragments(session, "doc-3")[0].embedding == [0.1, 0.2, 0.3]


def test_only_published_posts_are_ingested(session, make_post):
    ingestor = RagIngestor(session)
    draft = make_post(status="draft")
    published = make_post(status="published", published_url="https://example.org/p")

    assert ingestor.ingest_published_post(draft).noop is True
    outcome = ingestor.ingest_published_post(published.id, category="events")

    assert outcome.chunk_count == 1
    fragment = _fragments(session, published.id)[0]
    assert fragment.source_type == "past-content"
    assert fragment.category == "events"
    assert fragment.channel == "micro-post"
    assert fragment.meta["title"] == "Spring cleanup"


def test_profile_ingest(session, organization):
    outcome = RagIngestor(session).ingest_organization_profile("org-1")

    assert outcome.source_id == "profile:org-1"
    fragment = _fragments(session, "profile:org-1")[0]
    assert fragment.source_type == "profile"
    assert fragment.category == "profile"
    assert "Green River Trust" in fragment.text_content
