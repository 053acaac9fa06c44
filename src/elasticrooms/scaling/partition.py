from __future__ import annotations

import math
import random
from typing import Protocol

import networkx as nx
import structlog

from elasticrooms.exceptions import InvalidPartition
from elasticrooms.matching.scorer import MatchScorer
from elasticrooms.models import UserPresence

logger = structlog.get_logger(__name__)

VIBE_AWARE_MIN_PARTICIPANTS = 4
UNKNOWN_PAIR_WEIGHT = 50.0


class PartitionStrategy(Protocol):
    """Divides a room's participants into two non-empty groups."""

    def partition(
        self, participants: list[str], features: dict[str, UserPresence]
    ) -> tuple[list[str], list[str]]: ...


def _check_sides(first: list[str], second: list[str]) -> tuple[list[str], list[str]]:
    if not first or not second:
        raise InvalidPartition(f"Split would leave a side empty ({len(first)}/{len(second)})")
    return first, second


class RandomBalancedPartition:
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def partition(
        self, participants: list[str], features: dict[str, UserPresence]
    ) -> tuple[list[str], list[str]]:
        if len(participants) < 2:
            raise InvalidPartition(f"Cannot split {len(participants)} participant(s)")
        shuffled = list(participants)
        self._rng.shuffle(shuffled)
        midpoint = math.ceil(len(shuffled) / 2)
        return _check_sides(shuffled[:midpoint], shuffled[midpoint:])


class VibeAwarePartition:
    """Balanced bisection that keeps compatible participants together.

    Participants become nodes of a complete graph weighted by pairwise match
    score; Kernighan-Lin bisection minimises the compatibility cut between the
    two halves. Small rooms fall back to a random balanced split.
    """

    def __init__(
        self,
        scorer: MatchScorer,
        fallback: PartitionStrategy | None = None,
        seed: int | None = None,
    ) -> None:
        self._scorer = scorer
        self._fallback = fallback or RandomBalancedPartition(random.Random(seed))
        self._seed = seed

    def _graph(self, participants: list[str], features: dict[str, UserPresence]) -> nx.Graph:
        graph = nx.Graph()
        graph.add_nodes_from(participants)
        for i, a in enumerate(participants):
            for b in participants[i + 1 :]:
                if a in features and b in features:
                    weight = float(self._scorer.score(features[a], features[b]).score)
                else:
                    weight = UNKNOWN_PAIR_WEIGHT
                graph.add_edge(a, b, weight=weight)
        return graph

    def partition(
        self, participants: list[str], features: dict[str, UserPresence]
    ) -> tuple[list[str], list[str]]:
        if len(participants) < VIBE_AWARE_MIN_PARTICIPANTS:
            return self._fallback.partition(participants, features)

        graph = self._graph(participants, features)
        left, right = nx.community.kernighan_lin_bisection(graph, weight="weight", seed=self._seed)
        first = [p for p in participants if p in left]
        second = [p for p in participants if p in right]
        if len(first) < len(second):
            first, second = second, first

        logger.debug(
            "Vibe-aware partition",
            sizes=(len(first), len(second)),
            cut_weight=nx.cut_size(graph, left, right, weight="weight"),
        )
        return _check_sides(first, second)
