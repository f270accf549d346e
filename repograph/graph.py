"""Relationship-graph traversal: query expansion and direct dependency lookups."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import DEFAULT_GRAPH_DEPTH, DEFAULT_GRAPH_MIN_STRENGTH, DEFAULT_XREF_MIN_STRENGTH
from .errors import DataIntegrityError, UnknownEntity
from .models import (
    CrossReference,
    DependencyReport,
    Entity,
    ReachedEntity,
    Relationship,
    ScoredCandidate,
)
from .storage import GraphStore

logger = logging.getLogger(__name__)

DIRECTIONS = ("outgoing", "incoming", "both")

# Cross-references look at the entity's immediate neighbourhood unless asked.
DEFAULT_XREF_DEPTH = 1


class Traversal:
    """Result of one layered breadth-first walk.

    ``reached`` maps entity id to its first-reached layer; seeds are at hop 0
    with path strength 1.0.  ``edges`` lists each traversed edge once, with
    the hop at which it was followed.
    """

    def __init__(self) -> None:
        self.reached: Dict[str, ReachedEntity] = {}
        self.edges: List[Tuple[Relationship, int]] = []

    def score(self, entity_id: str) -> float:
        """``path_strength / hops``; seeds score 1.0."""
        hit = self.reached[entity_id]
        if hit.hops == 0:
            return 1.0
        return hit.path_strength / hit.hops


class GraphExpander:
    """Cycle-safe, depth-bounded traversal over relationship edges.

    Repository filters restrict the seeds and the returned items only;
    intermediate hops may pass through any repository.
    """

    def __init__(
        self,
        store: GraphStore,
        depth: int = DEFAULT_GRAPH_DEPTH,
        min_strength: float = DEFAULT_GRAPH_MIN_STRENGTH,
        xref_min_strength: float = DEFAULT_XREF_MIN_STRENGTH,
    ) -> None:
        self.store = store
        self.depth = depth
        self.min_strength = min_strength
        self.xref_min_strength = xref_min_strength

    # ------------------------------------------------------------------
    # Core traversal
    # ------------------------------------------------------------------

    def traverse(
        self,
        seeds: Sequence[str],
        depth: Optional[int] = None,
        min_strength: Optional[float] = None,
        direction: str = "outgoing",
    ) -> Traversal:
        """Walk outward from *seeds* layer by layer.

        No entity is expanded twice, so the walk terminates on cyclic graphs
        and never goes beyond *depth* hops.  When several edges reach the
        same entity within one layer, the highest path-strength product wins
        (ties go to the lexicographically smallest predecessor).

        Raises:
            DataIntegrityError: an edge points at an entity that is missing.
        """
        depth = self.depth if depth is None else depth
        min_strength = self.min_strength if min_strength is None else min_strength
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown direction: '{direction}'. Available: {', '.join(DIRECTIONS)}")
        if depth < 0:
            raise ValueError("depth must be >= 0")

        entities = self._entity_cache()
        result = Traversal()
        for seed in sorted(set(seeds)):
            result.reached[seed] = ReachedEntity(entity=entities(seed), hops=0, path_strength=1.0)

        visited: Set[str] = set(result.reached)
        frontier: Dict[str, float] = {seed: 1.0 for seed in result.reached}
        seen_edges: Set[Tuple[str, str, str]] = set()

        for hop in range(1, depth + 1):
            layer: Dict[str, Tuple[float, str]] = {}
            for node in sorted(frontier):
                for edge, neighbour in self._neighbours(node, min_strength, direction):
                    entities(neighbour)
                    key = (edge.src, edge.dst, edge.kind)
                    if key not in seen_edges:
                        seen_edges.add(key)
                        result.edges.append((edge, hop))
                    if neighbour in visited:
                        continue
                    product = frontier[node] * edge.strength
                    best = layer.get(neighbour)
                    if best is None or product > best[0]:
                        layer[neighbour] = (product, node)
            if not layer:
                break
            visited.update(layer)
            for entity_id, (product, via) in layer.items():
                result.reached[entity_id] = ReachedEntity(
                    entity=entities(entity_id), hops=hop, path_strength=product, via=via,
                )
            frontier = {entity_id: product for entity_id, (product, _) in layer.items()}

        logger.debug(
            "Traversal from %d seed(s): %d entities, %d edges (depth=%d, min_strength=%.2f)",
            len(seeds), len(result.reached), len(result.edges), depth, min_strength,
        )
        return result

    def _neighbours(
        self, entity_id: str, min_strength: float, direction: str,
    ) -> List[Tuple[Relationship, str]]:
        out: List[Tuple[Relationship, str]] = []
        if direction in ("outgoing", "both"):
            out.extend((e, e.dst) for e in self.store.get_outgoing_edges(entity_id, min_strength))
        if direction in ("incoming", "both"):
            out.extend((e, e.src) for e in self.store.get_incoming_edges(entity_id, min_strength))
        return out

    def _entity_cache(self):
        cache: Dict[str, Entity] = {}

        def lookup(entity_id: str) -> Entity:
            if entity_id not in cache:
                entity = self.store.get_entity(entity_id)
                if entity is None:
                    raise DataIntegrityError(
                        f"Edge references missing entity '{entity_id}'",
                        {"entity_id": entity_id},
                    )
                cache[entity_id] = entity
            return cache[entity_id]

        return lookup

    def resolve(
        self,
        entity: str,
        repositories: Optional[Iterable[str]] = None,
        strict: bool = True,
    ) -> Entity:
        """Look up *entity* by id, falling back to its qualified or short name.

        With *repositories*, only entities in those repositories qualify as the
        root.  A non-*strict* lookup falls back to any repository when the
        filter matches nothing.
        """
        repos = sorted(set(repositories)) if repositories else None
        found = self.store.get_entity(entity)
        if found is not None and (repos is None or found.repo in repos):
            return found
        matches = self.store.find_entities(entity, repos, limit=2)
        if not matches and repos is not None and not strict:
            matches = [found] if found is not None else self.store.find_entities(entity, limit=2)
        if not matches:
            raise UnknownEntity(entity)
        if len(matches) > 1:
            logger.debug("'%s' is ambiguous, using %s", entity, matches[0].entity_id)
        return matches[0]

    # ------------------------------------------------------------------
    # Retrieval-strategy entry point
    # ------------------------------------------------------------------

    def expand_query(
        self,
        seeds: Iterable[Entity],
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
        depth: Optional[int] = None,
        min_strength: Optional[float] = None,
    ) -> List[ScoredCandidate]:
        """Chunks of the seeds and of everything reachable from them."""
        repos = set(repositories) if repositories else None
        seed_ids = [s.entity_id for s in seeds if repos is None or s.repo in repos]
        if not seed_ids:
            return []

        walk = self.traverse(seed_ids, depth=depth, min_strength=min_strength)
        candidates: List[ScoredCandidate] = []
        for chunk in self.store.chunks_for_entities(list(walk.reached), repos):
            hit = walk.reached[chunk.entity_id]
            candidates.append(
                ScoredCandidate(
                    chunk_id=chunk.chunk_id,
                    repo=chunk.repo,
                    content=chunk.content,
                    raw_score=walk.score(chunk.entity_id),
                    source="graph",
                    entity_id=chunk.entity_id,
                    metadata={**chunk.metadata, "hops": hit.hops, "via": hit.via},
                )
            )
        candidates.sort(key=lambda c: (-c.raw_score, c.chunk_id))
        return candidates[:limit]

    # ------------------------------------------------------------------
    # Direct queries
    # ------------------------------------------------------------------

    def dependencies(
        self,
        entity: str,
        depth: Optional[int] = None,
        repositories: Optional[Iterable[str]] = None,
        direction: str = "outgoing",
        min_strength: Optional[float] = None,
    ) -> DependencyReport:
        """Entities reachable from *entity*, nearest first.

        Raises:
            UnknownEntity: *entity* is not in storage, or not in
                *repositories* when a filter is given.
        """
        repos = set(repositories) if repositories else None
        root = self.resolve(entity, repos)
        depth = self.depth if depth is None else depth
        min_strength = self.min_strength if min_strength is None else min_strength
        walk = self.traverse([root.entity_id], depth, min_strength, direction)

        reached = [
            hit for entity_id, hit in walk.reached.items()
            if entity_id != root.entity_id and (repos is None or hit.entity.repo in repos)
        ]
        reached.sort(key=lambda h: (h.hops, -h.path_strength, h.entity.entity_id))

        kept = {root.entity_id} | {h.entity.entity_id for h in reached}
        relationships = sorted(
            (e for e, _ in walk.edges if e.src in kept and e.dst in kept),
            key=lambda e: (e.src, e.dst, e.kind),
        )
        return DependencyReport(
            root=root,
            depth=depth,
            min_strength=min_strength,
            direction=direction,
            entities=reached,
            relationships=relationships,
        )

    def cross_references(
        self,
        entity: str,
        min_strength: Optional[float] = None,
        depth: int = DEFAULT_XREF_DEPTH,
        repositories: Optional[Iterable[str]] = None,
    ) -> List[CrossReference]:
        """Edges around *entity* whose endpoints live in different repositories.

        Edges below *min_strength* are never followed or reported.  With a
        repository filter, only edges touching a selected repository count.

        Raises:
            UnknownEntity: *entity* is not in storage.
        """
        repos = set(repositories) if repositories else None
        root = self.resolve(entity, repos, strict=False)
        min_strength = self.xref_min_strength if min_strength is None else min_strength
        walk = self.traverse([root.entity_id], depth, min_strength, direction="both")
        entities = self._entity_cache()

        refs: List[CrossReference] = []
        for edge, hop in walk.edges:
            src, dst = entities(edge.src), entities(edge.dst)
            if src.repo == dst.repo:
                continue
            if repos is not None and src.repo not in repos and dst.repo not in repos:
                continue
            refs.append(
                CrossReference(
                    from_repo=src.repo,
                    from_entity=src.entity_id,
                    to_repo=dst.repo,
                    to_entity=dst.entity_id,
                    kind=edge.kind,
                    strength=edge.strength,
                    hops=hop,
                )
            )
        refs.sort(key=lambda r: (r.hops, -r.strength, r.from_entity, r.to_entity, r.kind))
        return refs
