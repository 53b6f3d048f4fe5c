# /modelmint/src/modelmint/engine/surgeon.py

"""
Model Surgeon: State Machine for Head Architecture Decisions

Evaluated at the start of every training invocation:

- no existing head                    -> build a new head           (FRESH)
- existing head, same class count     -> re-fit all of its weights  (FINE_TUNE)
- existing head, class count changed  -> new output layer, hidden
                                         layer copied verbatim      (SURGERY_PENDING -> FRESH)

The head being fitted is always a separate object from the installed head,
so a failed or cancelled run leaves the installed head untouched.
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import torch

from ..config.engine_config import HeadConfig
from .errors import IncompatibleHeadShape
from .head import HeadNetwork


class HeadStateKind(Enum):
    """Head lifecycle states."""
    NO_HEAD = "no_head"
    FRESH = "fresh"
    SURGERY_PENDING = "surgery_pending"
    FINE_TUNE = "fine_tune"


@dataclass(frozen=True)
class HeadState:
    """
    Tagged variant over head states; ``head`` is None only for NO_HEAD.
    """
    kind: HeadStateKind
    head: Optional[HeadNetwork] = None

    def __post_init__(self):
        if (self.kind is HeadStateKind.NO_HEAD) != (self.head is None):
            raise ValueError(f"State {self.kind.value} is inconsistent with head={self.head!r}")

    @classmethod
    def no_head(cls) -> 'HeadState':
        return cls(HeadStateKind.NO_HEAD)

    @classmethod
    def fresh(cls, head: HeadNetwork) -> 'HeadState':
        return cls(HeadStateKind.FRESH, head)

    @classmethod
    def fine_tune(cls, head: HeadNetwork) -> 'HeadState':
        return cls(HeadStateKind.FINE_TUNE, head)

    @classmethod
    def surgery_pending(cls, head: HeadNetwork) -> 'HeadState':
        return cls(HeadStateKind.SURGERY_PENDING, head)

    @property
    def has_head(self) -> bool:
        return self.head is not None

    @property
    def output_width(self) -> Optional[int]:
        return self.head.num_classes if self.head is not None else None


class HeadStateMachine:
    """
    Allowed head state transitions.
    """

    VALID_TRANSITIONS: Dict[HeadStateKind, List[HeadStateKind]] = {
        HeadStateKind.NO_HEAD: [HeadStateKind.FRESH],
        HeadStateKind.FRESH: [HeadStateKind.FINE_TUNE, HeadStateKind.SURGERY_PENDING,
                              HeadStateKind.NO_HEAD],
        HeadStateKind.FINE_TUNE: [HeadStateKind.FINE_TUNE, HeadStateKind.SURGERY_PENDING,
                                  HeadStateKind.NO_HEAD],
        HeadStateKind.SURGERY_PENDING: [HeadStateKind.FRESH, HeadStateKind.NO_HEAD],
    }

    @classmethod
    def validate_transition(cls, current: HeadStateKind, new: HeadStateKind) -> bool:
        return new in cls.VALID_TRANSITIONS.get(current, [])


@dataclass
class SurgeryPlan:
    """
    Outcome of one surgeon decision: the head to fit and how to fit it.
    """
    state: HeadState
    head: HeadNetwork
    freeze_hidden: bool = False
    fell_back: bool = False

    @property
    def kind(self) -> HeadStateKind:
        return self.state.kind


class ModelSurgeon:
    """
    Chooses between fresh build, fine-tune and weight transplant.
    """

    def __init__(self, head_config: Optional[HeadConfig] = None,
                 device: Optional[torch.device] = None,
                 seed: Optional[int] = None):
        self.head_config = head_config or HeadConfig()
        self.device = device or torch.device('cpu')
        self.seed = seed
        self.logger = logging.getLogger(__name__)

    def plan(self, current: HeadState, num_classes: int, input_dim: int) -> SurgeryPlan:
        """
        Decide how the next training run obtains its head.

        Raises:
            IncompatibleHeadShape: the existing hidden layer cannot accept
                ``input_dim`` features
        """
        if num_classes <= 0:
            raise ValueError(f"Class count must be positive: {num_classes}")

        if not current.has_head:
            head = self.build(input_dim, num_classes)
            self.logger.info("surgery.fresh_head", extra={
                'input_dim': input_dim,
                'num_classes': num_classes,
                'hidden_units': head.hidden_units
            })
            return SurgeryPlan(state=HeadState.fresh(head), head=head)

        existing = current.head
        if existing.input_dim != input_dim:
            raise IncompatibleHeadShape(
                f"Existing head expects {existing.input_dim} features, embeddings have {input_dim}",
                {'head_input_dim': existing.input_dim, 'embedding_dim': input_dim}
            )

        if existing.num_classes == num_classes:
            head = copy.deepcopy(existing)
            head.set_hidden_trainable(True)
            self._check_transition(current.kind, HeadStateKind.FINE_TUNE)

            self.logger.info("surgery.fine_tune", extra={'num_classes': num_classes})
            return SurgeryPlan(state=HeadState.fine_tune(head), head=head)

        head = self.transplant(existing, num_classes)
        self._check_transition(current.kind, HeadStateKind.SURGERY_PENDING)

        self.logger.info("surgery.transplanted", extra={
            'old_num_classes': existing.num_classes,
            'new_num_classes': num_classes,
            'hidden_units': head.hidden_units
        })
        return SurgeryPlan(
            state=HeadState.surgery_pending(head),
            head=head,
            freeze_hidden=self.head_config.freeze_hidden_on_surgery
        )

    def plan_with_fallback(self, current: HeadState, num_classes: int,
                           input_dim: int) -> SurgeryPlan:
        """``plan``, restarting from NO_HEAD when the old head is incompatible."""
        try:
            return self.plan(current, num_classes, input_dim)
        except IncompatibleHeadShape as e:
            self.logger.warning("surgery.incompatible_head", extra={
                'error': e.message,
                **e.context
            })
            plan = self.plan(HeadState.no_head(), num_classes, input_dim)
            plan.fell_back = True
            return plan

    def complete(self, plan: SurgeryPlan) -> HeadState:
        """Resting state once the planned head finished training."""
        if plan.kind is HeadStateKind.SURGERY_PENDING:
            self._check_transition(plan.kind, HeadStateKind.FRESH)
            plan.head.set_hidden_trainable(True)
            return HeadState.fresh(plan.head)
        return plan.state

    def build(self, input_dim: int, num_classes: int) -> HeadNetwork:
        config = self.head_config
        return HeadNetwork(
            input_dim=input_dim,
            num_classes=num_classes,
            hidden_units=config.hidden_units,
            hidden_activation=config.hidden_activation,
            output_activation=config.output_activation,
            seed=self.seed
        ).to(self.device)

    def transplant(self, old: HeadNetwork, num_classes: int) -> HeadNetwork:
        """New head with a fresh output layer and the old hidden layer copied verbatim."""
        head = HeadNetwork(
            input_dim=old.input_dim,
            num_classes=num_classes,
            hidden_units=old.hidden_units,
            hidden_activation=old.hidden_activation_name,
            output_activation=old.output_activation_name,
            seed=self.seed
        ).to(old.device)

        with torch.no_grad():
            head.hidden.weight.copy_(old.hidden.weight)
            head.hidden.bias.copy_(old.hidden.bias)

        return head

    def _check_transition(self, current: HeadStateKind, new: HeadStateKind) -> None:
        if not HeadStateMachine.validate_transition(current, new):
            raise InvalidStateTransitionError(f"Invalid head transition {current.value} -> {new.value}")


class InvalidStateTransitionError(RuntimeError):
    """Raised when a head state transition is not allowed."""
    pass
