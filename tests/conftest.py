"""Pytest configuration and fixtures for repograph tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator

import pytest

from repograph.embeddings import HashEmbeddingModel
from repograph.loader import KnowledgeBaseLoader
from repograph.orchestrator import QueryOrchestrator
from repograph.storage import GraphStore

EMBEDDING_DIM = 64


def _entity(entity_id: str, kind: str, file_path: str) -> Dict[str, Any]:
    repo, qual = entity_id.split(":", 1)
    return {
        "entity_id": entity_id,
        "repo": repo,
        "name": qual.rsplit(".", 1)[-1],
        "qualname": f"{repo}.{qual}",
        "kind": kind,
        "file_path": file_path,
    }


def _chunk(entity_id: str, content: str) -> Dict[str, Any]:
    return {
        "chunk_id": f"{entity_id}:code",
        "repo": entity_id.split(":", 1)[0],
        "entity_id": entity_id,
        "content": content,
    }


def build_payload() -> Dict[str, Any]:
    """Three repositories with in-repo edges, cross-repo edges and a cycle.

    Graph (strengths in brackets)::

        api:ApiGateway -calls[0.9]-> auth:UserService.validateCredentials
        api:ApiGateway -uses[0.8]-> api:Router
        api:Router -uses[0.7]-> api:StreamingResponse
        auth:UserService -contains[1.0]-> auth:UserService.validateCredentials
        auth:UserService.validateCredentials -calls[0.95]-> auth:hash_password
        auth:UserService.validateCredentials -uses[0.6]-> auth:SessionManager
        auth:SessionManager -calls[0.8]-> auth:UserService          (cycle)
        ui:ChatView -calls[0.65]-> api:StreamingResponse
        ui:ChatView -imports[0.75]-> api:ApiGateway
    """
    return {
        "repositories": [
            {"repo_id": "api", "name": "API Gateway", "version": "2.1.0", "branch": "main"},
            {"repo_id": "auth", "name": "Auth Service", "version": "1.4.2"},
            {"repo_id": "ui", "name": "Chat UI"},
        ],
        "entities": [
            _entity("auth:UserService", "class", "auth/user_service.py"),
            _entity("auth:UserService.validateCredentials", "method", "auth/user_service.py"),
            _entity("auth:SessionManager", "class", "auth/session.py"),
            _entity("auth:hash_password", "function", "auth/crypto.py"),
            _entity("api:ApiGateway", "class", "api/gateway.py"),
            _entity("api:Router", "class", "api/router.py"),
            _entity("api:StreamingResponse", "class", "api/streaming.py"),
            _entity("ui:ChatView", "component", "ui/ChatView.tsx"),
        ],
        "relationships": [
            {"src": "api:ApiGateway", "dst": "auth:UserService.validateCredentials", "kind": "calls", "strength": 0.9},
            {"src": "api:ApiGateway", "dst": "api:Router", "kind": "uses", "strength": 0.8},
            {"src": "api:Router", "dst": "api:StreamingResponse", "kind": "uses", "strength": 0.7},
            {"src": "auth:UserService", "dst": "auth:UserService.validateCredentials", "kind": "contains", "strength": 1.0},
            {"src": "auth:UserService.validateCredentials", "dst": "auth:hash_password", "kind": "calls", "strength": 0.95},
            {"src": "auth:UserService.validateCredentials", "dst": "auth:SessionManager", "kind": "uses", "strength": 0.6},
            {"src": "auth:SessionManager", "dst": "auth:UserService", "kind": "calls", "strength": 0.8},
            {"src": "ui:ChatView", "dst": "api:StreamingResponse", "kind": "calls", "strength": 0.65},
            {"src": "ui:ChatView", "dst": "api:ApiGateway", "kind": "imports", "strength": 0.75},
        ],
        "chunks": [
            _chunk(
                "auth:UserService",
                "class UserService:\n    \"\"\"User account service.\"\"\"\n"
                "    def validateCredentials(self, username, password): ...",
            ),
            _chunk(
                "auth:UserService.validateCredentials",
                "def validateCredentials(self, username, password):\n"
                "    return hash_password(password) == self.lookup(username)",
            ),
            _chunk(
                "auth:SessionManager",
                "class SessionManager:\n    def create_session(self, user): ...",
            ),
            _chunk(
                "auth:hash_password",
                "def hash_password(password):\n    return sha256(password)",
            ),
            _chunk(
                "api:ApiGateway",
                "class ApiGateway:\n    def handle(self, request): route the request after login",
            ),
            _chunk(
                "api:Router",
                "class Router:\n    def route(self, path): dispatch requests to handlers",
            ),
            _chunk(
                "api:StreamingResponse",
                "class StreamingResponse:\n    \"\"\"Streaming response that yields chunks "
                "to the client as they are produced.\"\"\"\n    def stream(self): ...",
            ),
            _chunk(
                "ui:ChatView",
                "function ChatView() { render streaming chat messages }",
            ),
            {
                "chunk_id": "api:docs:streaming-guide",
                "repo": "api",
                "chunk_type": "doc",
                "content": "How streaming works: the streaming response writes chunks as soon as they are ready.",
            },
        ],
    }


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture(autouse=True)
def _isolated_home(temp_dir: Path, monkeypatch):
    """Point the data directory and config file at a temporary home."""
    home = temp_dir / "home"
    monkeypatch.setattr("repograph.config.BASE_DIR", home)
    monkeypatch.setattr("repograph.config.DATA_DIR", home / "data")
    monkeypatch.setattr("repograph.config.CONFIG_FILE", home / "config.toml")
    monkeypatch.setattr("repograph.config_manager.CONFIG_FILE", home / "config.toml")


@pytest.fixture
def embedder() -> HashEmbeddingModel:
    return HashEmbeddingModel(EMBEDDING_DIM)


@pytest.fixture
def payload() -> Dict[str, Any]:
    return build_payload()


@pytest.fixture
def empty_store(temp_dir: Path) -> Generator[GraphStore, None, None]:
    """A GraphStore with the exact-scan vector backend and no data."""
    store = GraphStore(temp_dir / "kb", vector_backend="exact")
    yield store
    store.close()


@pytest.fixture
def seeded_store(empty_store: GraphStore, payload, embedder) -> GraphStore:
    """A GraphStore loaded with the three-repository sample knowledge base."""
    KnowledgeBaseLoader(empty_store, embedder).load(payload)
    return empty_store


@pytest.fixture
def orchestrator(seeded_store: GraphStore, embedder) -> Generator[QueryOrchestrator, None, None]:
    orch = QueryOrchestrator(seeded_store, embedder=embedder)
    yield orch
    orch.close()
