"""
Stage graph lookups: ordering, successor, terminal, promotion path.
"""
import pytest

from domain.stage_graph import BUSINESS_PHASE_GRAPH, TRADING_STAGE_GRAPH, graph_for
from exceptions import InvalidPromotionPath, InvalidStage


class TestStageOrder:

    def test_index_of_known_and_unknown(self):
        assert TRADING_STAGE_GRAPH.index_of("research") == 0
        assert TRADING_STAGE_GRAPH.index_of("full_live") == 4
        assert TRADING_STAGE_GRAPH.index_of("moon") is None

    def test_next_stage(self):
        assert TRADING_STAGE_GRAPH.next_stage("research") == "backtest"
        assert TRADING_STAGE_GRAPH.next_stage("staged_live") == "full_live"
        assert TRADING_STAGE_GRAPH.next_stage("full_live") is None

    def test_next_stage_unknown_raises(self):
        with pytest.raises(InvalidStage) as exc_info:
            TRADING_STAGE_GRAPH.next_stage("moon")
        assert exc_info.value.details["valid_stages"] == list(TRADING_STAGE_GRAPH.stages)

    def test_terminal(self):
        assert TRADING_STAGE_GRAPH.is_terminal("full_live")
        assert not TRADING_STAGE_GRAPH.is_terminal("paper")
        assert BUSINESS_PHASE_GRAPH.is_terminal("phase_6")

    def test_initial_stage(self):
        assert TRADING_STAGE_GRAPH.initial_stage == "research"
        assert BUSINESS_PHASE_GRAPH.initial_stage == "phase_1"


class TestPromotionPath:

    def test_single_step_forward_is_legal(self):
        TRADING_STAGE_GRAPH.assert_next("backtest", "paper")

    @pytest.mark.parametrize("current,target", [
        ("research", "paper"),      # skip
        ("paper", "backtest"),      # backwards
        ("paper", "paper"),         # same stage
    ])
    def test_illegal_moves(self, current, target):
        with pytest.raises(InvalidPromotionPath) as exc_info:
            TRADING_STAGE_GRAPH.assert_next(current, target)
        assert exc_info.value.details["expected_stage"] == TRADING_STAGE_GRAPH.next_stage(current)

    def test_terminal_has_no_successor(self):
        with pytest.raises(InvalidPromotionPath) as exc_info:
            TRADING_STAGE_GRAPH.assert_next("full_live", "research")
        assert "terminal" in exc_info.value.message

    def test_unknown_target_is_invalid_stage(self):
        with pytest.raises(InvalidStage):
            TRADING_STAGE_GRAPH.assert_next("research", "prod")


class TestDeploymentStages:

    def test_deployment_stages(self):
        assert not TRADING_STAGE_GRAPH.requires_deployment("backtest")
        assert TRADING_STAGE_GRAPH.requires_deployment("paper")
        assert TRADING_STAGE_GRAPH.requires_deployment("full_live")

    def test_paper_mode(self):
        assert TRADING_STAGE_GRAPH.is_paper("paper")
        assert not TRADING_STAGE_GRAPH.is_paper("staged_live")

    def test_business_phases_never_deploy(self):
        assert not any(BUSINESS_PHASE_GRAPH.requires_deployment(s) for s in BUSINESS_PHASE_GRAPH.stages)
        assert BUSINESS_PHASE_GRAPH.label("phase_2") == "Branding"

    def test_graph_for_kind(self):
        assert graph_for("strategy_candidate") is TRADING_STAGE_GRAPH
        assert graph_for("phase_deliverable") is BUSINESS_PHASE_GRAPH
        with pytest.raises(ValueError):
            graph_for("rocket")
