"""Tests for app.services.conversation_service."""

from app.pipeline.states import ConversationPhase, PlanStatus
from app.schemas.conversation import MessageType
from app.services import conversation_service


class TestTitles:
    def test_short_message_is_kept(self):
        assert conversation_service.make_title("  Add   CSV export ", 50) == "Add CSV export"

    def test_long_message_breaks_on_word(self):
        message = "Add a CSV export button to the orders index page and the customer detail page"
        title = conversation_service.make_title(message, 50)
        assert title == "Add a CSV export button to the orders index page..."

    def test_long_word_is_cut_hard(self):
        title = conversation_service.make_title("x" * 80, 50)
        assert title == "x" * 50 + "..."


class TestHistory:
    async def test_only_conversational_turns(self, db, conversation):
        await conversation_service.add_message(db, conversation, "user", "Add export")
        await conversation_service.add_message(db, conversation, "assistant", "Which format?", MessageType.CLARIFICATION)
        await conversation_service.add_message(db, conversation, "assistant", "## Plan", MessageType.PLAN_PREVIEW)
        await conversation_service.add_message(db, conversation, "system", "note")
        await conversation_service.add_message(db, conversation, "user", "CSV")

        history = conversation_service.context_history(conversation, 10)

        assert history == [
            {"role": "user", "content": "Add export"},
            {"role": "assistant", "content": "Which format?"},
            {"role": "user", "content": "CSV"},
        ]
        assert conversation_service.context_history(conversation, 1) == [{"role": "user", "content": "CSV"}]

    async def test_message_metadata(self, db, conversation):
        message = await conversation_service.add_message(
            db, conversation, "assistant", "## Plan", MessageType.PLAN_PREVIEW, {"plan_id": "p1"}
        )
        assert message.message_type == "plan_preview"
        assert message.meta == {"plan_id": "p1"}
        assert conversation.messages == [message]
        db.flush.assert_awaited()


class TestActions:
    def test_by_phase(self, conversation):
        assert conversation_service.available_actions(conversation) == ["send_message", "cancel"]

        conversation.current_phase = ConversationPhase.APPROVAL.value
        assert "approve_plan" in conversation_service.available_actions(conversation)

        conversation.current_phase = ConversationPhase.EXECUTING.value
        assert "skip_file" in conversation_service.available_actions(conversation)

        conversation.current_phase = ConversationPhase.FAILED.value
        assert conversation_service.available_actions(conversation) == ["new_conversation", "retry"]

    def test_paused_can_only_resume(self, conversation):
        conversation.status = "paused"
        assert conversation_service.available_actions(conversation) == ["resume"]


class TestState:
    async def test_pending_executions_while_executing(self, db, conversation, make_plan, make_execution):
        plan = make_plan([{"type": "delete", "path": "a.php"}, {"type": "delete", "path": "b.php"}],
                         status=PlanStatus.EXECUTING)
        make_execution(plan, 0, "a.php")
        pending = make_execution(plan, 1, "b.php", status="pending")
        db.get.return_value = plan
        conversation.current_phase = ConversationPhase.EXECUTING.value
        conversation.current_plan_id = plan.id

        state = await conversation_service.get_state(db, conversation)

        assert state.is_executing()
        assert [p.id for p in state.pending_executions] == [pending.id]
        assert state.metadata["message_count"] == 0

    async def test_idle_state(self, db, conversation):
        state = await conversation_service.get_state(db, conversation)
        assert state.phase == "intake"
        assert state.pending_executions is None
        db.get.assert_not_awaited()

    async def test_resume(self, db, conversation):
        conversation.status = "paused"
        await conversation_service.resume(db, conversation)
        assert conversation.status == "active"
        db.commit.assert_awaited_once()
