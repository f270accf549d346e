"""Tests for importing knowledge-base exports."""

import json
from pathlib import Path

import pytest

from repograph.errors import DataIntegrityError
from repograph.loader import KnowledgeBaseLoader
from repograph.storage import GraphStore


class ConstantEmbedder:
    def embed_text(self, text):
        return [1.0, 0.0, 0.0, 0.0]


class TestKnowledgeBaseLoader:
    """Tests for KnowledgeBaseLoader."""

    def test_load_counts(self, empty_store: GraphStore, payload, embedder):
        stats = KnowledgeBaseLoader(empty_store, embedder).load(payload)
        assert stats == {"repositories": 3, "entities": 8, "relationships": 9, "chunks": 9}
        assert empty_store.stats()["embedded_chunks"] == 9
        assert empty_store.embedding_dim() == embedder.dim

    def test_load_file(self, empty_store: GraphStore, payload, temp_dir: Path):
        path = temp_dir / "export.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        KnowledgeBaseLoader(empty_store).load_file(path)
        assert empty_store.stats()["chunks"] == 9
        assert empty_store.stats()["embedded_chunks"] == 0
        assert empty_store.list_repositories()[0].embedding_model is None

    def test_edges_key_accepted(self, empty_store: GraphStore, payload):
        payload["edges"] = payload.pop("relationships")
        stats = KnowledgeBaseLoader(empty_store).load(payload)
        assert stats["relationships"] == 9

    def test_existing_embeddings_kept(self, empty_store: GraphStore, embedder):
        vector = [1.0] + [0.0] * (embedder.dim - 1)
        KnowledgeBaseLoader(empty_store, embedder).load({
            "chunks": [{"chunk_id": "r:a", "repo": "r", "content": "alpha", "embedding": vector}],
        })
        assert empty_store.get_chunk("r:a").embedding == vector

    def test_unknown_fields_ignored(self, empty_store: GraphStore):
        KnowledgeBaseLoader(empty_store).load({
            "entities": [{"entity_id": "r:x", "repo": "r", "name": "x", "language": "go"}],
        })
        assert empty_store.get_entity("r:x").qualname == "x"

    def test_malformed_record(self, empty_store: GraphStore):
        with pytest.raises(DataIntegrityError):
            KnowledgeBaseLoader(empty_store).load({"entities": [{"entity_id": "r:x"}]})

    def test_strength_out_of_range(self, empty_store: GraphStore, payload):
        payload["relationships"][0]["strength"] = 1.5
        with pytest.raises(DataIntegrityError):
            KnowledgeBaseLoader(empty_store).load(payload)
        assert empty_store.stats()["entities"] == 0

    def test_dangling_edge(self, empty_store: GraphStore, payload):
        payload["relationships"].append({"src": "api:Router", "dst": "api:Gone", "kind": "calls"})
        with pytest.raises(DataIntegrityError):
            KnowledgeBaseLoader(empty_store).load(payload)
        stats = empty_store.stats()
        assert (stats["repositories"], stats["entities"], stats["edges"], stats["chunks"]) == (0, 0, 0, 0)

    def test_bad_chunk_rolls_back_whole_batch(self, empty_store: GraphStore, payload):
        payload["chunks"].append({"chunk_id": "api:bad", "repo": "api", "content": "x", "embedding": [0.1, 0.2]})
        payload["chunks"][0]["embedding"] = [0.1] * 8
        with pytest.raises(DataIntegrityError):
            KnowledgeBaseLoader(empty_store).load(payload)
        assert empty_store.list_repositories() == []

    def test_any_embedding_provider(self, empty_store: GraphStore, payload):
        """Providers only need embed_text."""
        KnowledgeBaseLoader(empty_store, ConstantEmbedder()).load(payload)
        assert empty_store.stats()["embedded_chunks"] == 9
        assert empty_store.list_repositories()[0].embedding_model == "ConstantEmbedder"
