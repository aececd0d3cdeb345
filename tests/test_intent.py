from __future__ import annotations

import pytest

from greg.agents import intent
from greg.agents.intent import IntentTag
from greg.models.schemas import ChatMessage


def msgs(*pairs: tuple[str, str]) -> list[ChatMessage]:
    return [ChatMessage(role=role, content=content) for role, content in pairs]


class TestDetectIntents:
    def test_french_schedule_is_time_sensitive(self):
        tags = intent.detect_intents("horaires du magasin demain")
        assert IntentTag.TIME_SENSITIVE in tags
        assert intent.needs_forced_search("horaires du magasin demain")

    def test_language_filter_skips_other_language_rules(self):
        assert IntentTag.TIME_SENSITIVE not in intent.detect_intents("horaires du magasin demain", languages=("en",))
        assert IntentTag.TIME_SENSITIVE in intent.detect_intents("horaires du magasin demain", languages=("fr",))

    def test_year_rule_applies_to_every_language(self):
        assert IntentTag.TIME_SENSITIVE in intent.detect_intents("budget 2027", languages=("en",))

    def test_listing_forces_search(self):
        assert IntentTag.LISTING in intent.detect_intents("job offers for nurses in Lyon")
        assert intent.needs_forced_search("offres d'emploi à Nantes")

    def test_image_tag(self):
        assert intent.detect_intents("show me 3 photos of Paris")[0] is IntentTag.IMAGE

    def test_tags_are_reported_once(self):
        tags = intent.detect_intents("latest news and prices today")
        assert tags.count(IntentTag.TIME_SENSITIVE) == 1

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Can you verify this claim?", True),
            ("give me your sources", True),
            ("Explain recursion to me", False),
            ("How tall is the Eiffel Tower?", False),
        ],
    )
    def test_web_gate_hint(self, text, expected):
        assert intent.should_run_web_gate(text) is expected


class TestConversation:
    def test_short_follow_up_defers_to_previous_user_turn(self):
        conversation = msgs(("user", "Explain how tides work"), ("assistant", "Tides are..."), ("user", "ok"))
        assert intent.last_user_message(conversation) == "Explain how tides work"

    def test_meaningful_latest_turn_wins(self):
        conversation = msgs(("user", "Explain how tides work"), ("user", "and what about moons?"))
        assert intent.last_user_message(conversation) == "and what about moons?"

    def test_no_user_turn(self):
        assert intent.last_user_message(msgs(("assistant", "Hello"))) == ""

    def test_latest_urls_take_precedence(self):
        conversation = msgs(("user", "read https://old.example.org/a"), ("user", "now https://example.com/b"))
        assert intent.request_urls("now https://example.com/b", conversation) == ["https://example.com/b"]

    def test_history_url_is_reused_for_follow_ups(self):
        conversation = msgs(
            ("user", "read https://example.com/a then https://example.com/b"),
            ("assistant", "Done."),
            ("user", "Summarize it in French"),
        )
        assert intent.request_urls("Summarize it in French", conversation) == ["https://example.com/b"]

    def test_fresh_information_skips_history_urls(self):
        conversation = msgs(("user", "read https://example.com/a"), ("user", "latest news about this team"))
        assert intent.request_urls("latest news about this team", conversation) == []


class TestQueries:
    def test_who_is_becomes_biography(self):
        assert intent.synthesize_search_query("who is Ada Lovelace?") == "Ada Lovelace biography"
        assert intent.synthesize_search_query("Qui est Marie Curie ?") == "Marie Curie biographie"

    def test_user_wording_is_kept(self):
        assert intent.synthesize_search_query("  horaires du   magasin demain ? ") == "horaires du magasin demain"

    def test_versioned_api_gets_documentation(self):
        query = intent.synthesize_search_query("What changed in the requests library 2.32.0?")
        assert query == "What changed in the requests library 2.32.0 documentation"
        assert intent.synthesize_search_query("requests library 2.32.0 docs") == "requests library 2.32.0 docs"

    def test_latest_video_gets_platform(self):
        assert intent.synthesize_search_query("latest video of Veritasium").endswith("YouTube")
        assert not intent.synthesize_search_query("latest video of Veritasium on vimeo").endswith("YouTube")

    def test_empty_message(self):
        assert intent.synthesize_search_query("   ") == ""

    def test_informative_tokens_fold_diacritics_and_drop_stopwords(self):
        assert intent.informative_tokens("Le prix du café") == ["prix", "cafe"]

    def test_validate_query_keeps_good_queries(self):
        assert intent.validate_query(" Eiffel Tower height ", "whatever") == "Eiffel Tower height"

    def test_validate_query_falls_back_to_user_message(self):
        assert not intent.is_usable_query("it")
        assert intent.validate_query("it", "who is Ada Lovelace?") == "Ada Lovelace biography"

    def test_validate_query_with_nothing_usable(self):
        assert intent.validate_query("", "") == ""
