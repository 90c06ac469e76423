"""Navigation history as a directed multigraph of visited pages."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class JourneyNode:
    url: str
    title: str
    last_visited_at: float
    visit_count: int = 0


@dataclass
class JourneyEdge:
    source_url: str
    target_url: str
    traversal_count: int = 0
    last_traversed_at: float = 0.0


class JourneyGraph:
    """Tracks page visits and the transitions between them."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self.nodes: Dict[str, JourneyNode] = {}
        self.edges: Dict[Tuple[str, str], JourneyEdge] = {}
        self.root_url: Optional[str] = None
        self.current_url: Optional[str] = None
        self._lock = threading.Lock()
        self._load()

    def record_visit(self, url: str, title: str = "", timestamp: Optional[float] = None) -> JourneyNode:
        visited_at = timestamp if timestamp is not None else time.time()
        with self._lock:
            node = self.nodes.get(url)
            if node is None:
                node = JourneyNode(url=url, title=title, last_visited_at=visited_at)
                self.nodes[url] = node
            node.visit_count += 1
            node.last_visited_at = visited_at
            if title:
                node.title = title

            previous = self.current_url
            if previous is not None and previous != url:
                key = (previous, url)
                edge = self.edges.get(key)
                if edge is None:
                    edge = JourneyEdge(source_url=previous, target_url=url)
                    self.edges[key] = edge
                edge.traversal_count += 1
                edge.last_traversed_at = visited_at

            if self.root_url is None:
                self.root_url = url
            self.current_url = url
            self._save()
            return node

    def recent_visits(self, limit: int = 10) -> List[JourneyNode]:
        with self._lock:
            nodes = sorted(self.nodes.values(), key=lambda n: n.last_visited_at, reverse=True)
        return nodes[: max(limit, 0)]

    def most_visited(self, limit: int = 10) -> List[JourneyNode]:
        with self._lock:
            nodes = sorted(
                self.nodes.values(),
                key=lambda n: (n.visit_count, n.last_visited_at),
                reverse=True,
            )
        return nodes[: max(limit, 0)]

    def related(self, url: str, limit: int = 5) -> List[str]:
        """Pages reached from or leading to ``url``, most traversed first."""
        weights: Dict[str, int] = {}
        with self._lock:
            for (source, target), edge in self.edges.items():
                if source == url:
                    weights[target] = weights.get(target, 0) + edge.traversal_count
                elif target == url:
                    weights[source] = weights.get(source, 0) + edge.traversal_count
        ranked = sorted(weights.items(), key=lambda item: item[1], reverse=True)
        return [neighbour for neighbour, _ in ranked[: max(limit, 0)]]

    def edge(self, source_url: str, target_url: str) -> Optional[JourneyEdge]:
        return self.edges.get((source_url, target_url))

    def snapshot(self) -> Dict:
        with self._lock:
            return self._payload()

    def _payload(self) -> Dict:
        return {
            "nodes": {url: asdict(node) for url, node in self.nodes.items()},
            "edges": [asdict(edge) for edge in self.edges.values()],
            "root_url": self.root_url,
            "current_url": self.current_url,
        }

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load journey: %s", e)
            return

        for url, data in (raw.get("nodes") or {}).items():
            self.nodes[url] = JourneyNode(
                url=url,
                title=data.get("title", ""),
                last_visited_at=float(data.get("last_visited_at", 0.0)),
                visit_count=int(data.get("visit_count", 0)),
            )
        for data in raw.get("edges") or []:
            edge = JourneyEdge(
                source_url=data["source_url"],
                target_url=data["target_url"],
                traversal_count=int(data.get("traversal_count", 0)),
                last_traversed_at=float(data.get("last_traversed_at", 0.0)),
            )
            self.edges[(edge.source_url, edge.target_url)] = edge
        self.root_url = raw.get("root_url")
        self.current_url = raw.get("current_url")
        logger.info("Loaded journey with %d pages", len(self.nodes))

    def _save(self):
        if not self.path:
            return
        payload = self._payload()
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
        except OSError as e:
            logger.warning("Failed to save journey: %s", e)
