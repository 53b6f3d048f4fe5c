"""
Unit Tests for the Model Surgeon and Head Network
"""

import pytest
import torch

from modelmint.config.engine_config import HeadConfig
from modelmint.engine.errors import IncompatibleHeadShape
from modelmint.engine.head import WEIGHT_ORDER, HeadNetwork
from modelmint.engine.surgeon import (
    HeadState,
    HeadStateKind,
    HeadStateMachine,
    ModelSurgeon
)


class TestHeadNetwork:

    def test_forward_is_a_distribution(self):
        head = HeadNetwork(input_dim=6, num_classes=3, hidden_units=4, seed=0)
        output = head(torch.randn(5, 6))

        assert output.shape == (5, 3)
        assert torch.allclose(output.sum(dim=1), torch.ones(5), atol=1e-6)

    def test_biases_start_at_zero(self):
        head = HeadNetwork(input_dim=6, num_classes=3, hidden_units=4, seed=0)

        assert torch.count_nonzero(head.hidden.bias) == 0
        assert torch.count_nonzero(head.output.bias) == 0

    def test_same_seed_same_weights(self):
        first = HeadNetwork(input_dim=6, num_classes=3, hidden_units=4, seed=7)
        second = HeadNetwork(input_dim=6, num_classes=3, hidden_units=4, seed=7)

        for (_, a), (_, b) in zip(first.weight_items(), second.weight_items()):
            assert torch.equal(a, b)

    def test_topology_round_trip(self):
        head = HeadNetwork(input_dim=6, num_classes=3, hidden_units=4, output_activation="sigmoid")
        rebuilt = HeadNetwork.from_topology(head.topology())

        assert (rebuilt.input_dim, rebuilt.hidden_units, rebuilt.num_classes) == (6, 4, 3)
        assert rebuilt.output_activation_name == "sigmoid"
        assert [name for name, _ in rebuilt.weight_items()] == list(WEIGHT_ORDER)

    def test_bad_topology_rejected(self):
        with pytest.raises(ValueError):
            HeadNetwork.from_topology({'layers': []})

    def test_unknown_activation_rejected(self):
        with pytest.raises(ValueError):
            HeadNetwork(input_dim=2, num_classes=2, hidden_activation="tanh")


class TestModelSurgeon:

    @pytest.fixture
    def surgeon(self):
        return ModelSurgeon(HeadConfig(hidden_units=4), seed=3)

    def test_no_head_builds_fresh(self, surgeon):
        plan = surgeon.plan(HeadState.no_head(), num_classes=2, input_dim=5)

        assert plan.kind is HeadStateKind.FRESH
        assert plan.head.num_classes == 2
        assert plan.head.input_dim == 5
        assert plan.freeze_hidden is False

    def test_same_class_count_fine_tunes_a_copy(self, surgeon):
        installed = surgeon.build(5, 2)
        plan = surgeon.plan(HeadState.fresh(installed), num_classes=2, input_dim=5)

        assert plan.kind is HeadStateKind.FINE_TUNE
        assert plan.head is not installed
        assert torch.equal(plan.head.hidden.weight, installed.hidden.weight)

    def test_class_count_change_transplants_hidden_layer(self, surgeon):
        installed = surgeon.build(5, 2)
        plan = surgeon.plan(HeadState.fresh(installed), num_classes=3, input_dim=5)

        assert plan.kind is HeadStateKind.SURGERY_PENDING
        assert plan.head.num_classes == 3
        assert plan.freeze_hidden is True
        assert torch.equal(plan.head.hidden.weight, installed.hidden.weight)
        assert torch.equal(plan.head.hidden.bias, installed.hidden.bias)

    def test_transplant_also_shrinks(self, surgeon):
        installed = surgeon.build(5, 3)
        plan = surgeon.plan(HeadState.fine_tune(installed), num_classes=2, input_dim=5)

        assert plan.head.output.weight.shape == (2, 4)

    def test_complete_settles_surgery_as_fresh(self, surgeon):
        installed = surgeon.build(5, 2)
        plan = surgeon.plan(HeadState.fresh(installed), num_classes=3, input_dim=5)
        plan.head.set_hidden_trainable(False)

        state = surgeon.complete(plan)

        assert state.kind is HeadStateKind.FRESH
        assert all(p.requires_grad for p in state.head.parameters())

    def test_incompatible_input_dim(self, surgeon):
        installed = surgeon.build(5, 2)

        with pytest.raises(IncompatibleHeadShape):
            surgeon.plan(HeadState.fresh(installed), num_classes=2, input_dim=7)

        plan = surgeon.plan_with_fallback(HeadState.fresh(installed), num_classes=2, input_dim=7)
        assert plan.fell_back is True
        assert plan.kind is HeadStateKind.FRESH
        assert plan.head.input_dim == 7

    def test_state_requires_matching_head(self):
        with pytest.raises(ValueError):
            HeadState(HeadStateKind.FRESH, None)

    def test_transition_table(self):
        assert HeadStateMachine.validate_transition(HeadStateKind.NO_HEAD, HeadStateKind.FRESH)
        assert not HeadStateMachine.validate_transition(HeadStateKind.NO_HEAD, HeadStateKind.FINE_TUNE)
        assert HeadStateMachine.validate_transition(HeadStateKind.SURGERY_PENDING, HeadStateKind.FRESH)
