"""
Integration tests for the FastAPI backend API.
"""

import os
import shutil
import sys
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

# Add backend to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from app_state import MementoEngine
from embedder import HashEmbeddingProvider
from errors import StorageFailure
from main import create_app


class TestFastAPIEndpoints:
    """Test suite for FastAPI endpoints."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.engine = MementoEngine(
            data_dir=Path(self.temp_dir),
            embedder=HashEmbeddingProvider(embedding_dim=16),
            reconcile_interval=0,
        )
        self.client = TestClient(create_app(self.engine))

    def teardown_method(self):
        """Clean up test fixtures."""
        self.engine.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _ingest(self, url, content, title="", **extra):
        payload = {"url": url, "title": title, "content": content}
        payload.update(extra)
        response = self.client.post("/ingest", json=payload)
        assert response.status_code == 200
        return response.json()

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert self.client.get("/").status_code == 200

    def test_ingest(self):
        data = self._ingest("https://www.example.com/a/", "hello world", title="A")
        assert data == {"success": True, "id": "example.com/a", "state": "captured"}

        document = self.client.get("/documents/example.com/a").json()
        assert document["url"] == "https://www.example.com/a/"
        assert document["content"] == "hello world"
        assert document["state"] == "captured"

    def test_ingest_with_iso_timestamp(self):
        self._ingest("https://example.com/a", "hello", timestamp="2024-01-02T03:04:05Z")
        document = self.client.get("/documents/example.com/a").json()
        assert document["timestamp"] == pytest.approx(1704164645.0)

    def test_ingest_without_url(self):
        response = self.client.post("/ingest", json={"url": "", "content": "hello"})
        assert response.status_code == 400
        assert response.json()["error"] == "capture_failure"

    def test_ingest_storage_failure(self):
        with patch.object(self.engine.store, "put", side_effect=StorageFailure("disk full")):
            response = self.client.post(
                "/ingest", json={"url": "https://example.com/a", "content": "hello"}
            )
        assert response.status_code == 503
        assert response.json() == {"error": "storage_failure", "detail": "disk full"}

    def test_get_missing_document(self):
        response = self.client.get("/documents/example.com/missing")
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "params",
        [{"q": ""}, {"q": "   "}, {"q": "hello", "mode": "fuzzy"}, {"q": "hello", "limit": 0}],
    )
    def test_invalid_search(self, params):
        response = self.client.get("/search", params=params)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_query"

    def test_search_failure(self):
        self._ingest("https://example.com/a", "hello world")
        self.client.post("/admin/reconcile")
        with patch.object(self.engine.embedder, "embed", side_effect=RuntimeError("boom")):
            response = self.client.get("/search", params={"q": "hello"})
        assert response.status_code == 500
        assert response.json()["error"] == "search_failure"

    def test_documents_not_searchable_until_reconciled(self):
        self._ingest("https://example.com/a", "hello world hello")
        response = self.client.get("/search", params={"q": "hello", "mode": "lexical"})
        assert response.json() == {"results": []}

    def test_end_to_end(self):
        self._ingest("https://example.com/a", "hello world hello", title="Alpha")

        reconcile = self.client.post("/admin/reconcile").json()
        assert reconcile["indexed"] == ["example.com/a"]

        results = self.client.get("/search", params={"q": "hello", "mode": "lexical"}).json()["results"]
        assert len(results) == 1
        assert results[0]["url"] == "https://example.com/a"
        assert results[0]["title"] == "Alpha"
        assert results[0]["snippet"] == "hello world hello"
        assert results[0]["score"] == 1.0

        results = self.client.get(
            "/search", params={"q": "nonexistentword", "mode": "lexical"}
        ).json()["results"]
        assert results == []

        # same content, so the same placeholder vector
        self._ingest("https://example.com/b", "hello world hello", title="Beta")
        self.client.post("/admin/reconcile")

        results = self.client.get("/search", params={"q": "alpha", "mode": "hybrid"}).json()["results"]
        assert [hit["url"] for hit in results] == ["https://example.com/a", "https://example.com/b"]
        assert results[0]["score"] > results[1]["score"]

    def test_post_search(self):
        self._ingest("https://example.com/a", "hello world", title="A")
        self._ingest("https://example.com/b", "other page", title="B")
        self.client.post("/admin/reconcile")

        response = self.client.post(
            "/search",
            json={"query": "hello", "mode": "lexical", "limit": 5, "includeRelated": True},
        )
        assert response.status_code == 200
        results = response.json()["results"]
        assert len(results) == 1
        assert results[0]["related"] == ["https://example.com/b"]

    def test_get_and_post_share_default_limit(self):
        for i in range(12):
            self._ingest(f"https://example.com/{i}", f"hello page {i}")
        self.client.post("/admin/reconcile")

        via_get = self.client.get("/search", params={"q": "hello", "mode": "lexical"}).json()
        via_post = self.client.post("/search", json={"query": "hello", "mode": "lexical"}).json()
        assert len(via_get["results"]) == 10
        assert len(via_post["results"]) == 10

    def test_failed_conversion_reported(self):
        self._ingest("https://example.com/a", "<!-- nothing -->")
        reconcile = self.client.post("/admin/reconcile").json()
        assert reconcile["failed"] == ["example.com/a"]

        document = self.client.get("/documents/example.com/a").json()
        assert document["state"] == "failed"

    def test_interaction_and_attention(self):
        self._ingest("https://example.com/a", "hello world")
        response = self.client.post(
            "/interaction",
            json={
                "url": "https://example.com/a",
                "viewportData": {
                    "#intro": {"timeVisible": 3000, "visibilityPercentage": 100},
                    "#flash": {"timeVisible": 200, "visibilityPercentage": 100},
                },
                "cursorMovement": 120.5,
                "scrollEvents": 3,
                "observedDurationMs": 6000,
            },
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "id": "example.com/a", "elements": 1}

        attention = self.client.get("/attention/example.com/a").json()
        assert attention["engagement"] == pytest.approx(0.5)
        assert attention["top_elements"] == ["#intro"]
        assert attention["scroll_event_count"] == 3

    def test_ingest_merges_interaction_data(self):
        self._ingest(
            "https://example.com/a",
            "hello world",
            interactionData={
                "viewportData": {"#main": {"timeVisible": 1000, "visibilityPercentage": 50}},
                "observedDurationMs": 2000,
            },
        )
        attention = self.client.get("/attention/example.com/a").json()
        assert attention["elements"]["#main"]["time_visible_ms"] == 1000

    def test_attention_unknown_document(self):
        assert self.client.get("/attention/example.com/none").status_code == 404

    def test_journey_endpoints(self):
        for url in ["https://example.com/a", "https://example.com/b", "https://example.com/a"]:
            self._ingest(url, "content")

        snapshot = self.client.get("/journey").json()
        assert snapshot["root_url"] == "https://example.com/a"
        assert snapshot["current_url"] == "https://example.com/a"
        assert len(snapshot["edges"]) == 2

        recent = self.client.get("/journey/recent", params={"limit": 1}).json()["pages"]
        assert [page["url"] for page in recent] == ["https://example.com/a"]

        most = self.client.get("/journey/most-visited").json()["pages"]
        assert most[0]["url"] == "https://example.com/a"
        assert most[0]["visit_count"] == 2

        related = self.client.get(
            "/journey/related", params={"url": "https://example.com/a"}
        ).json()
        assert related["related"] == ["https://example.com/b"]

    def test_stats(self):
        self._ingest("https://example.com/a", "hello world")
        self.client.post("/admin/reconcile")

        stats = self.client.get("/stats").json()
        assert stats["documents"]["indexed"] == 1
        assert stats["lexical"]["documents"] == 1
        assert stats["semantic"]["documents"] == 1
        assert stats["journey_pages"] == 1
        assert stats["reconciler_running"] is False


class TestLifespan:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_background_reconciler_runs_with_app(self):
        engine = MementoEngine(
            data_dir=Path(self.temp_dir),
            embedder=HashEmbeddingProvider(embedding_dim=16),
            reconcile_interval=0.05,
        )
        with TestClient(create_app(engine)) as client:
            assert engine.reconciler.running
            client.post("/ingest", json={"url": "https://example.com/a", "content": "hello world"})

            deadline = time.time() + 5.0
            results = []
            while time.time() < deadline and not results:
                results = client.get("/search", params={"q": "hello", "mode": "lexical"}).json()["results"]
                time.sleep(0.05)
            assert len(results) == 1

        assert not engine.reconciler.running

    def test_restart_requeues_documents_missing_from_indexes(self):
        engine = MementoEngine(
            data_dir=Path(self.temp_dir),
            embedder=HashEmbeddingProvider(embedding_dim=16),
            reconcile_interval=0,
        )
        client = TestClient(create_app(engine))
        client.post("/ingest", json={"url": "https://example.com/a", "content": "hello world"})
        client.post("/admin/reconcile")

        os.remove(os.path.join(self.temp_dir, "index", "semantic.json"))

        restarted = MementoEngine(
            data_dir=Path(self.temp_dir),
            embedder=HashEmbeddingProvider(embedding_dim=16),
            reconcile_interval=0,
        )
        assert restarted.store.get("example.com/a").state.value == "captured"
        assert restarted.reconcile().indexed == ["example.com/a"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
