import unicodedata

import pytest

from chatgate.config.command_rules import load_command_rules
from chatgate.core.commands import (
    BookCommand,
    CommandInterceptor,
    NewsCommand,
    SearchCommand,
    WeatherCommand,
)
from chatgate.core.models import Message


@pytest.fixture
def interceptor() -> CommandInterceptor:
    return CommandInterceptor.from_rules(load_command_rules(), locales=["bn", "en"], default_city="Dhaka")


def test_weather_with_bengali_city(interceptor):
    assert interceptor.detect("আবহাওয়া চট্টগ্রাম") == WeatherCommand(city="Chittagong")


def test_weather_without_city_uses_default(interceptor):
    assert interceptor.detect("আজকের আবহাওয়া কেমন?") == WeatherCommand(city="Dhaka")


def test_weather_english_case_insensitive(interceptor):
    assert interceptor.detect("What's the WEATHER in Sylhet") == WeatherCommand(city="Sylhet")


def test_decomposed_bengali_input_still_matches(interceptor):
    decomposed = unicodedata.normalize("NFD", "আবহাওয়া চট্টগ্রাম")
    assert interceptor.detect(decomposed) == WeatherCommand(city="Chittagong")


def test_plain_chat_is_not_a_command(interceptor):
    assert interceptor.detect("hello there") is None
    assert interceptor.detect("") is None
    assert interceptor.detect("   ") is None


def test_news_trigger(interceptor):
    assert interceptor.detect("আজকের খবর দেখাও") == NewsCommand()
    assert interceptor.detect("any headlines today?") == NewsCommand()


def test_book_query_is_text_without_trigger(interceptor):
    assert interceptor.detect("find book: Pather Panchali") == BookCommand(query="Pather Panchali")
    assert interceptor.detect("বই খুঁজুন গীতাঞ্জলি") == BookCommand(query="গীতাঞ্জলি")


def test_search_query_is_text_without_trigger(interceptor):
    assert interceptor.detect("Search for Python asyncio tutorial") == SearchCommand(query="Python asyncio tutorial")


def test_trigger_without_query_falls_through(interceptor):
    assert interceptor.detect("search") is None
    assert interceptor.detect("বই খুঁজুন") is None


def test_weather_is_checked_before_news(interceptor):
    # "আবহাওয়ার খবর" contains the news trigger "খবর" too
    assert interceptor.detect("আবহাওয়ার খবর ঢাকা") == WeatherCommand(city="Dhaka")


def test_detect_conversation_uses_latest_user_turn(interceptor):
    conversation = [
        Message(role="user", content="weather in Khulna"),
        Message(role="assistant", content="Khulna: 31°C"),
        Message(role="user", content="thanks, tell me a joke"),
    ]
    assert interceptor.detect_conversation(conversation) is None
    conversation.append(Message(role="assistant", content="search engines are fun"))
    assert interceptor.detect_conversation(conversation) is None


def test_locale_selection_limits_triggers():
    rules = load_command_rules()
    english_only = CommandInterceptor.from_rules(rules, locales=["en"], default_city="Dhaka")
    assert english_only.detect("আবহাওয়া চট্টগ্রাম") is None
    assert english_only.detect("weather chattogram") == WeatherCommand(city="Chittagong")


def test_rules_file_overrides_defaults(tmp_path):
    rules_file = tmp_path / "commands.yaml"
    rules_file.write_text(
        "locales:\n  en:\n    weather:\n      triggers: [\"how hot\"]\ncities:\n  bogura: Bogura\n",
        encoding="utf-8",
    )
    rules = load_command_rules(str(rules_file))
    interceptor = CommandInterceptor.from_rules(rules, locales=["en"], default_city="Dhaka")
    assert interceptor.detect("how hot is it in Bogura") == WeatherCommand(city="Bogura")
    assert interceptor.detect("weather") is None
    assert rules["cities"]["chittagong"] == "Chittagong"


def test_trigger_is_stripped_when_casefold_changes_length():
    interceptor = CommandInterceptor(triggers={"search": ["Straße suchen"]}, cities={}, default_city="Dhaka")
    assert interceptor.detect("Straße suchen: Berlin Mitte") == SearchCommand(query="Berlin Mitte")
    assert interceptor.detect("STRASSE SUCHEN Köln") == SearchCommand(query="Köln")
    assert interceptor.detect("straße suchen?") is None
