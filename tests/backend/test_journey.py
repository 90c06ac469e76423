"""
Unit tests for the journey graph.
"""

import os
import shutil
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from journey import JourneyGraph


class TestJourneyGraph:
    """Test suite for the JourneyGraph class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, "journey.json")
        self.graph = JourneyGraph(path=self.path)

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_first_visit_sets_root(self):
        self.graph.record_visit("https://a.test", "A", timestamp=1.0)

        assert self.graph.root_url == "https://a.test"
        assert self.graph.current_url == "https://a.test"
        assert self.graph.nodes["https://a.test"].visit_count == 1
        assert self.graph.edges == {}

    def test_back_and_forth_counts(self):
        for i, url in enumerate(["A", "B", "A", "B"]):
            self.graph.record_visit(url, timestamp=float(i))

        assert self.graph.nodes["A"].visit_count == 2
        assert self.graph.nodes["B"].visit_count == 2
        assert self.graph.edge("A", "B").traversal_count == 2
        assert self.graph.edge("B", "A").traversal_count == 1
        assert self.graph.root_url == "A"
        assert self.graph.current_url == "B"

    def test_reload_of_same_page_adds_no_edge(self):
        self.graph.record_visit("A", timestamp=1.0)
        self.graph.record_visit("A", timestamp=2.0)

        assert self.graph.nodes["A"].visit_count == 2
        assert self.graph.nodes["A"].last_visited_at == 2.0
        assert self.graph.edges == {}

    def test_title_updated_when_given(self):
        self.graph.record_visit("A", "Old title", timestamp=1.0)
        self.graph.record_visit("A", "", timestamp=2.0)
        assert self.graph.nodes["A"].title == "Old title"
        self.graph.record_visit("A", "New title", timestamp=3.0)
        assert self.graph.nodes["A"].title == "New title"

    def test_recent_visits(self):
        self.graph.record_visit("A", timestamp=1.0)
        self.graph.record_visit("B", timestamp=3.0)
        self.graph.record_visit("C", timestamp=2.0)

        assert [node.url for node in self.graph.recent_visits(2)] == ["B", "C"]

    def test_most_visited(self):
        for i, url in enumerate(["A", "B", "B", "C", "B", "A"]):
            self.graph.record_visit(url, timestamp=float(i))

        assert [node.url for node in self.graph.most_visited(2)] == ["B", "A"]

    def test_related_in_both_directions(self):
        for i, url in enumerate(["A", "B", "A", "B", "C", "A"]):
            self.graph.record_visit(url, timestamp=float(i))

        # A<->B traversed three times in total, C->A once
        assert self.graph.related("A") == ["B", "C"]
        assert self.graph.related("A", limit=1) == ["B"]
        assert self.graph.related("unknown") == []

    def test_snapshot(self):
        self.graph.record_visit("A", "Page A", timestamp=1.0)
        self.graph.record_visit("B", "Page B", timestamp=2.0)

        snapshot = self.graph.snapshot()
        assert set(snapshot["nodes"]) == {"A", "B"}
        assert snapshot["edges"] == [
            {
                "source_url": "A",
                "target_url": "B",
                "traversal_count": 1,
                "last_traversed_at": 2.0,
            }
        ]
        assert snapshot["root_url"] == "A"
        assert snapshot["current_url"] == "B"

    def test_persistence_round_trip(self):
        for i, url in enumerate(["A", "B", "A"]):
            self.graph.record_visit(url, timestamp=float(i))

        reloaded = JourneyGraph(path=self.path)
        assert reloaded.snapshot() == self.graph.snapshot()

        # navigation continues from the persisted current page
        reloaded.record_visit("C", timestamp=10.0)
        assert reloaded.edge("A", "C").traversal_count == 1

    def test_corrupt_file_loads_empty(self):
        with open(self.path, "w") as f:
            f.write("{")
        graph = JourneyGraph(path=self.path)
        assert graph.nodes == {}
        assert graph.root_url is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
