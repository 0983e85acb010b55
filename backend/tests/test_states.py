"""Tests for app.pipeline.states: phase and plan status machines."""

import pytest

from app.pipeline.states import (
    PHASE_TRANSITIONS,
    PLAN_TRANSITIONS,
    ConversationPhase,
    FileExecutionStatus,
    IllegalTransitionError,
    PlanStatus,
    force_phase,
    transition_phase,
    transition_plan,
)


class TestConversationPhase:
    def test_every_phase_has_an_edge_entry(self):
        assert set(PHASE_TRANSITIONS) == set(ConversationPhase)

    def test_terminal_phases_have_no_exits(self):
        for phase in (ConversationPhase.COMPLETED, ConversationPhase.FAILED):
            assert phase.is_terminal()
            assert not PHASE_TRANSITIONS[phase]

    def test_every_non_terminal_phase_can_fail(self):
        for phase in ConversationPhase:
            if not phase.is_terminal():
                assert phase.can_transition_to(ConversationPhase.FAILED)

    def test_happy_path_is_legal(self):
        path = [
            ConversationPhase.INTAKE, ConversationPhase.DISCOVERY, ConversationPhase.PLANNING,
            ConversationPhase.APPROVAL, ConversationPhase.EXECUTING, ConversationPhase.COMPLETED,
        ]
        for source, target in zip(path, path[1:]):
            assert source.can_transition_to(target)

    def test_cannot_skip_planning(self):
        assert not ConversationPhase.DISCOVERY.can_transition_to(ConversationPhase.APPROVAL)
        assert not ConversationPhase.INTAKE.can_transition_to(ConversationPhase.EXECUTING)

    def test_labels_and_flags(self):
        assert ConversationPhase.APPROVAL.label == "Awaiting Approval"
        assert ConversationPhase.APPROVAL.requires_user_action()
        assert ConversationPhase.EXECUTING.is_active()
        assert not ConversationPhase.INTAKE.is_active()


class TestTransitions:
    def test_transition_returns_source(self, conversation):
        assert transition_phase(conversation, ConversationPhase.DISCOVERY) is ConversationPhase.INTAKE
        assert conversation.current_phase == "discovery"

    def test_illegal_transition_raises(self, conversation):
        with pytest.raises(IllegalTransitionError) as exc:
            transition_phase(conversation, ConversationPhase.EXECUTING)
        assert "intake -> executing" in str(exc.value)
        assert conversation.current_phase == "intake"

    def test_terminal_phase_sets_status(self, conversation):
        conversation.current_phase = ConversationPhase.EXECUTING.value
        transition_phase(conversation, ConversationPhase.COMPLETED)
        assert conversation.status == "completed"

    def test_paused_status_survives_non_terminal_moves(self, conversation):
        conversation.status = "paused"
        transition_phase(conversation, ConversationPhase.CLARIFICATION)
        assert conversation.status == "paused"

    def test_force_ignores_edges(self, conversation):
        conversation.current_phase = ConversationPhase.EXECUTING.value
        force_phase(conversation, ConversationPhase.INTAKE)
        assert conversation.current_phase == "intake"

    def test_force_never_leaves_terminal(self, conversation):
        conversation.current_phase = ConversationPhase.FAILED.value
        with pytest.raises(IllegalTransitionError):
            force_phase(conversation, ConversationPhase.INTAKE)


class TestPlanStatus:
    def test_every_status_has_an_edge_entry(self):
        assert set(PLAN_TRANSITIONS) == set(PlanStatus)

    def test_only_approved_can_execute(self):
        assert [s for s in PlanStatus if s.can_execute()] == [PlanStatus.APPROVED]

    def test_lifecycle(self, make_plan):
        plan = make_plan([], PlanStatus.DRAFT)
        for target in (PlanStatus.PENDING_REVIEW, PlanStatus.APPROVED, PlanStatus.EXECUTING, PlanStatus.COMPLETED):
            transition_plan(plan, target)
        assert plan.status == "completed"
        transition_plan(plan, PlanStatus.FAILED)
        assert plan.status == "failed"

    def test_draft_cannot_be_approved_directly(self, make_plan):
        plan = make_plan([], PlanStatus.DRAFT)
        with pytest.raises(IllegalTransitionError):
            transition_plan(plan, PlanStatus.APPROVED)

    def test_file_execution_terminal_states(self):
        assert not FileExecutionStatus.PENDING.is_terminal()
        assert not FileExecutionStatus.IN_PROGRESS.is_terminal()
        assert FileExecutionStatus.ROLLED_BACK.is_terminal()
