import httpx
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from conftest import make_answer

from mira.conversation import prompts
from mira.conversation.orchestrator import ChatOrchestrator
from mira.conversation.related_questions import RelatedQuestionGenerator
from mira.integrations.artifact_triggers import ArtifactTriggerClient
from mira.models.errors import UnexpectedReplyError
from mira.models.schemas import AnswerOption, Personality, Sender


class TestFreeformAnswers:
    @pytest.mark.asyncio
    async def test_chat_created_before_answer(self, orchestrator, answer_service, message_store):
        seen = {}

        async def ask(text, personality, chat_id, message_id):
            seen["chat_exists"] = message_store.validate_chat(chat_id)
            return make_answer()

        answer_service.ask.side_effect = ask
        result = await orchestrator.handle_message(None, "user-1", "What is XSS?", personality="investigator")

        assert seen["chat_exists"] is True
        answer_service.generate_title.assert_awaited_once_with("What is XSS?")
        args = answer_service.ask.await_args.args
        assert args[0] == "What is XSS?"
        assert args[1] == Personality.INVESTIGATOR
        assert args[2] == result.chat_id
        assert args[3] == result.messages[-1].id

    @pytest.mark.asyncio
    async def test_answer_persisted_with_enrichment_and_tag(self, orchestrator, message_store):
        result = await orchestrator.handle_message(None, "user-1", "What is XSS?")
        await orchestrator.drain()

        history = message_store.get_history(result.chat_id)
        assert [m.sender for m in history] == [Sender.USER, Sender.AI]
        answer = history[1]
        assert answer.text == "XSS is a client-side injection flaw."
        assert answer.reasoning_trace[0].narrative == "Looked up XSS in the knowledge graph."
        assert answer.jargons[0].description == "Cross-site scripting"
        assert message_store.get_chat(result.chat_id).tags == ["cybersecurity_general", "web_security"]

    @pytest.mark.asyncio
    async def test_negation_with_url_is_answered_not_scanned(self, orchestrator, answer_service, scan_client):
        result = await orchestrator.handle_message(None, "user-1", "don't scan https://example.com")
        scan_client.scan.assert_not_awaited()
        answer_service.ask.assert_awaited_once()
        assert result.state["pending_action"] is None
        await orchestrator.drain()

    @pytest.mark.asyncio
    async def test_answer_failure_toasts_and_stays_idle(self, orchestrator, answer_service, message_store):
        answer_service.ask.side_effect = RuntimeError("model overloaded")
        result = await orchestrator.handle_message(None, "user-1", "What is XSS?")

        assert [m.sender for m in result.messages] == [Sender.USER]
        assert result.state["pending_action"] is None
        toasts = orchestrator.sessions[result.chat_id].emitter.get_events_by_type("toast")
        assert toasts[0].data["message"] == prompts.MSG_ANSWER_FAILED
        assert [m.text for m in message_store.get_history(result.chat_id)] == ["What is XSS?"]

    @pytest.mark.asyncio
    async def test_title_failure_falls_back(self, orchestrator, answer_service, message_store):
        answer_service.generate_title.side_effect = RuntimeError("timeout")
        result = await orchestrator.handle_message(None, "user-1", "hello")
        assert message_store.get_chat(result.chat_id).title == "Chat"
        await orchestrator.drain()

    @pytest.mark.asyncio
    async def test_suggested_options_open_random_step(self, orchestrator, answer_service):
        answer_service.ask.return_value = make_answer(options=[
            AnswerOption(option="Explain stored XSS"),
            AnswerOption(option="Explain reflected XSS"),
        ])
        first = await orchestrator.handle_message(None, "user-1", "Tell me about XSS")
        assert first.state["action_type"] == "random"
        assert first.state["pending_action"] == first.messages[-1].id

        answer_service.ask.return_value = make_answer("Stored XSS persists on the server.")
        result = await orchestrator.choose_option(first.chat_id, "Explain stored XSS")

        assert answer_service.ask.await_args.args[0] == "Explain stored XSS"
        assert result.messages[-1].text == "Stored XSS persists on the server."
        assert result.state["pending_action"] is None
        await orchestrator.drain()


class TestReportMenu:
    @pytest.mark.asyncio
    async def test_vulnerability_report_without_url(self, orchestrator):
        first = await orchestrator.handle_message(None, "user-1", "What is XSS?")
        menu = await orchestrator.request_report(first.chat_id)
        assert menu.state["action_type"] == "report"
        assert menu.messages[0].text == prompts.MSG_REPORT_PROMPT

        result = await orchestrator.choose_option(first.chat_id, prompts.VULNERABILITY_REPORT)
        assert [m.text for m in result.messages[1:]] == [prompts.MSG_REPORT_TYPE_RECEIVED, prompts.MSG_NEED_URL]
        assert result.state["pending_action"] is None
        await orchestrator.drain()

    @pytest.mark.asyncio
    async def test_vulnerability_report_uses_last_url(self, orchestrator, scan_client):
        first = await orchestrator.handle_message(None, "user-1", "scan https://example.com")
        await orchestrator.cancel(first.chat_id)
        await orchestrator.request_report(first.chat_id)

        standards = await orchestrator.choose_option(first.chat_id, prompts.VULNERABILITY_REPORT)
        assert standards.state["action_type"] == "standards"

        await orchestrator.choose_option(first.chat_id, "OWASP Top 10")
        assert scan_client.scan.await_args.args[0] == "https://example.com"

    @pytest.mark.asyncio
    async def test_chat_summary_saved_to_new_folder(self, orchestrator, scan_client, folder_store):
        first = await orchestrator.handle_message(None, "user-1", "What is XSS?")
        chat_id = first.chat_id
        await orchestrator.request_report(chat_id)

        summary = await orchestrator.choose_option(chat_id, prompts.CHAT_SUMMARY_REPORT)
        sent = scan_client.stream_chat_summary.call_args.args[0]
        assert "What is XSS?" in sent
        assert summary.messages[1].text == "Chat summary."
        assert summary.state["confirm_type"] == "save-chat-summary"

        folders = await orchestrator.approve(chat_id, True)
        assert folders.state["action_type"] == "save-chat-summary"
        await orchestrator.choose_option(chat_id, prompts.CREATE_NEW_FOLDER)
        created = await orchestrator.submit_input(chat_id, "Summaries")
        assert created.state["confirm_type"] == "chat-summary-create-file"

        await orchestrator.submit_input(chat_id, "xss-notes")
        folder = folder_store.list_folders("user-1")[0]
        artifact = folder_store.list_artifacts(folder.id)[0]
        assert artifact.markdown == "Chat summary."
        assert artifact.report_type == "chatSummaryReport"
        await orchestrator.drain()

    @pytest.mark.asyncio
    async def test_report_menu_requires_idle_dialogue(self, orchestrator):
        first = await orchestrator.handle_message(None, "user-1", "scan https://example.com")
        with pytest.raises(UnexpectedReplyError):
            await orchestrator.request_report(first.chat_id)


class TestSidecars:
    @pytest.mark.asyncio
    async def test_triggers_and_related_questions(self, message_store, folder_store, answer_service, scan_client):
        triggers = MagicMock()
        triggers.trigger_graph = AsyncMock(return_value=True)
        triggers.trigger_todo = AsyncMock(return_value=True)
        llm = MagicMock()
        llm.chat_json = AsyncMock(return_value={"questions": ["What is CSP?", "What is DOM XSS?", "How do I sanitise input?"]})
        related = RelatedQuestionGenerator(llm)
        orchestrator = ChatOrchestrator(
            message_store=message_store,
            folder_store=folder_store,
            answer_service=answer_service,
            scan_client=scan_client,
            artifact_triggers=triggers,
            related_questions=related,
            step_delay=0,
        )

        result = await orchestrator.handle_message(None, "user-1", "What is XSS?")
        await orchestrator.drain()

        ai_id = result.messages[-1].id
        triggers.trigger_graph.assert_awaited_once_with(result.chat_id, ai_id, "What is XSS?", "XSS is a client-side injection flaw.")
        triggers.trigger_todo.assert_awaited_once_with(result.chat_id, ai_id, "XSS is a client-side injection flaw.")
        assert related.get(ai_id) == ["What is CSP?", "What is DOM XSS?", "How do I sanitise input?"]
        events = orchestrator.sessions[result.chat_id].emitter.get_events_by_type("related_questions")
        assert events[0].data == {"message_id": ai_id, "questions": related.get(ai_id)}

    @pytest.mark.asyncio
    async def test_dropped_sessions_release_sidecar_state(self, message_store, folder_store, answer_service, scan_client):
        triggers = ArtifactTriggerClient("http://graph.test", transport=httpx.MockTransport(lambda request: httpx.Response(202)))
        llm = MagicMock()
        llm.chat_json = AsyncMock(return_value={"questions": ["a?", "b?", "c?"]})
        related = RelatedQuestionGenerator(llm)
        orchestrator = ChatOrchestrator(
            message_store=message_store,
            folder_store=folder_store,
            answer_service=answer_service,
            scan_client=scan_client,
            artifact_triggers=triggers,
            related_questions=related,
            step_delay=0,
        )

        answers = []
        for _ in range(3):
            result = await orchestrator.handle_message(None, "user-1", "What is XSS?")
            await orchestrator.drain()
            answers.append((result.chat_id, result.messages[-1].id))
        assert all(related.get(ai_id) for _, ai_id in answers)

        orchestrator.drop_session(answers[0][0])
        assert related.get(answers[0][1]) is None
        assert related.get(answers[1][1]) == ["a?", "b?", "c?"]

        expired = orchestrator.cleanup_idle_sessions(timedelta(seconds=-1))
        assert sorted(expired) == sorted(chat_id for chat_id, _ in answers[1:])
        assert orchestrator.sessions == {}
        assert all(related.get(ai_id) is None for _, ai_id in answers)
        assert related._results == {} and related._processed == set()
        assert triggers._triggered == set()
