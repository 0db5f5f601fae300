# src/pipeline/stages.py — v1
"""Run stage transition graph.

Nominal path: init → fetch_list → parse_list → [fetch_details] → classify
→ score → finalize → terminal. Every stage may also short-circuit to the
terminal node. The graph is a networkx DiGraph so the state machine can
assert each transition it makes.
"""

from __future__ import annotations

import logging

import networkx as nx

from scrapegate.core.models import Stage

logger = logging.getLogger(__name__)

TERMINAL = "terminal"

NOMINAL_ORDER: tuple[Stage, ...] = (
    Stage.INIT,
    Stage.FETCH_LIST,
    Stage.PARSE_LIST,
    Stage.FETCH_DETAILS,
    Stage.CLASSIFY,
    Stage.SCORE,
    Stage.FINALIZE,
)


class TransitionError(Exception):
    """Raised when a run attempts a transition the stage graph forbids."""


def build_stage_graph() -> nx.DiGraph:
    """Build the allowed-transition DiGraph (nodes are stage values)."""
    graph = nx.DiGraph()
    graph.add_nodes_from(s.value for s in NOMINAL_ORDER)
    graph.add_node(TERMINAL)
    for current, nxt in zip(NOMINAL_ORDER, NOMINAL_ORDER[1:]):
        graph.add_edge(current.value, nxt.value)
    # fetch_details is optional (disabled per source or in safe mode)
    graph.add_edge(Stage.PARSE_LIST.value, Stage.CLASSIFY.value)
    for stage in NOMINAL_ORDER:
        graph.add_edge(stage.value, TERMINAL)
    if not nx.is_directed_acyclic_graph(graph):
        raise TransitionError("Stage graph must be acyclic")
    return graph


STAGE_GRAPH = build_stage_graph()


def _node(stage: Stage | str) -> str:
    return stage.value if isinstance(stage, Stage) else stage


def can_transition(current: Stage | str, target: Stage | str) -> bool:
    return STAGE_GRAPH.has_edge(_node(current), _node(target))


def check_transition(current: Stage | str, target: Stage | str) -> None:
    """Raise TransitionError unless current → target is an edge."""
    if not can_transition(current, target):
        raise TransitionError(f"Illegal stage transition {_node(current)} -> {_node(target)}")


def stages_after(stage: Stage) -> list[Stage]:
    """Stages reachable from ``stage`` in nominal order (resume planning)."""
    reachable = nx.descendants(STAGE_GRAPH, stage.value)
    return [s for s in NOMINAL_ORDER if s.value in reachable]
