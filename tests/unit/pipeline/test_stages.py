# tests/unit/pipeline/test_stages.py — v1
"""Tests for pipeline/stages.py — the stage transition graph."""

from __future__ import annotations

import networkx as nx
import pytest

from scrapegate.core.models import Stage
from scrapegate.pipeline.stages import (
    STAGE_GRAPH,
    TERMINAL,
    TransitionError,
    can_transition,
    check_transition,
    stages_after,
)


class TestStageGraph:
    def test_acyclic(self):
        assert nx.is_directed_acyclic_graph(STAGE_GRAPH)

    def test_nominal_path(self):
        path = ["init", "fetch_list", "parse_list", "fetch_details", "classify", "score", "finalize"]
        for current, nxt in zip(path, path[1:]):
            assert can_transition(current, nxt)

    def test_details_are_optional(self):
        assert can_transition(Stage.PARSE_LIST, Stage.CLASSIFY)

    def test_every_stage_can_terminate(self):
        for stage in Stage:
            assert can_transition(stage, TERMINAL)

    def test_no_skipping_or_going_back(self):
        assert not can_transition(Stage.INIT, Stage.PARSE_LIST)
        assert not can_transition(Stage.SCORE, Stage.CLASSIFY)
        assert not can_transition(Stage.FETCH_LIST, Stage.SCORE)

    def test_terminal_is_a_sink(self):
        assert STAGE_GRAPH.out_degree(TERMINAL) == 0

    def test_check_transition_raises(self):
        check_transition(Stage.CLASSIFY, Stage.SCORE)
        with pytest.raises(TransitionError, match="finalize -> init"):
            check_transition(Stage.FINALIZE, Stage.INIT)


class TestStagesAfter:
    def test_after_parse_list(self):
        assert stages_after(Stage.PARSE_LIST) == [
            Stage.FETCH_DETAILS, Stage.CLASSIFY, Stage.SCORE, Stage.FINALIZE,
        ]

    def test_after_finalize(self):
        assert stages_after(Stage.FINALIZE) == []
