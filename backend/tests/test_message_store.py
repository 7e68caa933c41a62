import pytest

from conftest import make_answer

from mira.conversation.persistence import enrichment_from_answer
from mira.integrations.message_store import MessageStore
from mira.models.schemas import MessageEnrichment, Sender


class TestMessageStore:
    def test_create_and_validate_chat(self, message_store):
        chat_id = message_store.create_chat("user-1", "XSS basics", tags=["cybersecurity_general"])
        assert message_store.validate_chat(chat_id)
        assert not message_store.validate_chat("missing")
        assert not message_store.validate_chat("")
        chat = message_store.get_chat(chat_id)
        assert chat.title == "XSS basics"
        assert chat.tags == ["cybersecurity_general"]

    def test_history_preserves_order(self, message_store):
        chat_id = message_store.create_chat("user-1", "Order")
        message_store.save_message(chat_id, Sender.USER, "first")
        message_store.save_message(chat_id, Sender.AI, "second")
        message_store.save_message(chat_id, Sender.USER, "third")
        history = message_store.get_history(chat_id)
        assert [m.text for m in history] == ["first", "second", "third"]
        assert [m.sender for m in history] == [Sender.USER, Sender.AI, Sender.USER]

    def test_save_with_same_id_overwrites_in_place(self, message_store):
        chat_id = message_store.create_chat("user-1", "Upsert")
        message_store.save_message(chat_id, Sender.USER, "q", message_id="m1")
        message_store.save_message(chat_id, Sender.AI, "draft", message_id="m2")
        message_store.save_message(chat_id, Sender.AI, "final", message_id="m2")
        history = message_store.get_history(chat_id)
        assert [(m.id, m.text) for m in history] == [("m1", "q"), ("m2", "final")]

    def test_unknown_chat_rejected(self, message_store):
        with pytest.raises(KeyError):
            message_store.save_message("nope", Sender.USER, "hello")
        with pytest.raises(KeyError):
            message_store.add_chat_tag("nope", "web_security")

    def test_enrichment_restored_as_message_fields(self, message_store):
        chat_id = message_store.create_chat("user-1", "Enriched")
        message_store.save_message(chat_id, Sender.AI, "XSS is...", enrichment=enrichment_from_answer(make_answer(), 2.0))

        message = message_store.get_history(chat_id)[0]
        assert message.reasoning_trace[0].narrative == "Looked up XSS in the knowledge graph."
        assert [s.step for s in message.reasoning_trace[1:]] == ["Step1", "Step2", "Step3"]
        assert message.jargons[0].term == "XSS"
        assert message.source_links[0].title == "OWASP XSS"
        assert message.tags == ["web_security"]
        assert message.duration_sec == 2.0

    def test_hitl_annotations_restored(self, message_store):
        chat_id = message_store.create_chat("user-1", "Scan")
        message_store.save_message(chat_id, Sender.AI, "Pick a scan", enrichment=MessageEnrichment(
            action_type="scan", confirm_type="none", human_in_the_loop_message="You can choose from the following:",
        ))
        message = message_store.get_history(chat_id)[0]
        assert message.action_type == "scan"
        assert message.human_in_the_loop_message == "You can choose from the following:"
        assert message.reasoning_trace is None

    def test_tags_are_deduplicated(self, message_store):
        chat_id = message_store.create_chat("user-1", "Tags", tags=["cybersecurity_general"])
        message_store.add_chat_tag(chat_id, "web_security")
        assert message_store.add_chat_tag(chat_id, "web_security") == ["cybersecurity_general", "web_security"]

    def test_list_and_delete(self, message_store):
        a = message_store.create_chat("user-1", "A")
        message_store.create_chat("user-2", "B")
        message_store.save_message(a, Sender.USER, "hello")
        assert [c.id for c in message_store.list_chats("user-1")] == [a]
        assert message_store.delete_chat(a)
        assert message_store.get_history(a) == []
        assert not message_store.delete_chat(a)

    def test_persists_across_instances(self, db_path):
        chat_id = MessageStore(db_path).create_chat("user-1", "Durable")
        assert MessageStore(db_path).validate_chat(chat_id)

    def test_search_messages_across_user_chats(self, message_store):
        basics = message_store.create_chat("user-1", "XSS basics")
        message_store.save_message(basics, Sender.USER, "What is XSS?")
        message_store.save_message(basics, Sender.AI, "Cross-site scripting (xss) is an injection flaw.")
        message_store.save_message(basics, Sender.USER, "Thanks")
        stored = message_store.create_chat("user-1", "Stored attacks")
        message_store.save_message(stored, Sender.USER, "Show a stored XsS payload")
        other = message_store.create_chat("user-2", "Not mine")
        message_store.save_message(other, Sender.USER, "xss for someone else")

        hits = message_store.search_messages("user-1", "xss")

        assert {(chat.title, message.text) for chat, message in hits} == {
            ("XSS basics", "What is XSS?"),
            ("XSS basics", "Cross-site scripting (xss) is an injection flaw."),
            ("Stored attacks", "Show a stored XsS payload"),
        }
        in_basics = [message.text for chat, message in hits if chat.id == basics]
        assert in_basics == ["Cross-site scripting (xss) is an injection flaw.", "What is XSS?"]
        assert message_store.search_messages("user-1", "  ") == []
        assert message_store.search_messages("user-1", "csrf") == []
