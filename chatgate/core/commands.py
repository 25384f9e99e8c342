"""Trigger-phrase command detection.

The latest user turn is matched against locale keyword sets. A hit reroutes
the request to a command handler instead of the provider chain.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence, Union

from chatgate.config.command_rules import COMMAND_KINDS, load_command_rules, triggers_for_locales
from chatgate.config.settings import settings
from chatgate.core.models import Message


@dataclass(frozen=True, slots=True)
class WeatherCommand:
    kind: ClassVar[str] = "weather"
    city: str


@dataclass(frozen=True, slots=True)
class NewsCommand:
    kind: ClassVar[str] = "news"


@dataclass(frozen=True, slots=True)
class BookCommand:
    kind: ClassVar[str] = "book"
    query: str


@dataclass(frozen=True, slots=True)
class SearchCommand:
    kind: ClassVar[str] = "search"
    query: str


Command = Union[WeatherCommand, NewsCommand, BookCommand, SearchCommand]

# separators people put between a trigger and its query, e.g. "search: x"
_QUERY_TRIM_CHARS = " \t\r\n:;,.-–—।?!\"'"


def _normalize(text: str) -> str:
    return unicodedata.normalize("NFC", text or "")


def _fold(text: str) -> str:
    return _normalize(text).casefold()


def latest_user_text(conversation: Sequence[Message]) -> str:
    for message in reversed(conversation):
        if message.role == "user":
            return message.content
    return ""


class CommandInterceptor:
    def __init__(
        self,
        triggers: dict[str, list[str]],
        cities: dict[str, str],
        default_city: str,
    ) -> None:
        self._triggers = {
            kind: [(_fold(item), item) for item in triggers.get(kind, []) if _fold(item).strip()]
            for kind in COMMAND_KINDS
        }
        self._cities = [(_fold(keyword), city) for keyword, city in cities.items() if _fold(keyword).strip()]
        self.default_city = default_city

    @classmethod
    def from_rules(
        cls,
        rules: dict[str, Any] | None = None,
        *,
        locales: list[str] | None = None,
        default_city: str | None = None,
    ) -> "CommandInterceptor":
        loaded = rules if rules is not None else load_command_rules()
        return cls(
            triggers=triggers_for_locales(loaded, locales or settings.locales()),
            cities=dict(loaded.get("cities") or {}),
            default_city=default_city or settings.default_city,
        )

    def detect(self, text: str) -> Command | None:
        folded = _fold(text)
        if not folded.strip():
            return None

        for kind in COMMAND_KINDS:
            for trigger_folded, _ in self._triggers[kind]:
                if trigger_folded not in folded:
                    continue
                # first hit decides; an empty book/search query means ordinary chat
                return self._build(kind, text, trigger_folded, folded)
        return None

    def detect_conversation(self, conversation: Sequence[Message]) -> Command | None:
        return self.detect(latest_user_text(conversation))

    def _build(self, kind: str, text: str, trigger_folded: str, folded: str) -> Command | None:
        if kind == "weather":
            return WeatherCommand(city=self._resolve_city(folded))
        if kind == "news":
            return NewsCommand()
        query = self._strip_trigger(text, trigger_folded)
        if not query:
            return None
        if kind == "book":
            return BookCommand(query=query)
        return SearchCommand(query=query)

    def _resolve_city(self, folded: str) -> str:
        for keyword, city in self._cities:
            if keyword in folded:
                return city
        return self.default_city

    @staticmethod
    def _strip_trigger(text: str, trigger_folded: str) -> str:
        normalized = _normalize(text)
        # casefold can change length (ß -> ss), so map folded positions back
        folded_chars: list[str] = []
        origins: list[int] = []
        for index, char in enumerate(normalized):
            for folded_char in char.casefold():
                folded_chars.append(folded_char)
                origins.append(index)
        start = "".join(folded_chars).find(trigger_folded)
        if start >= 0 and trigger_folded:
            end = origins[start + len(trigger_folded) - 1] + 1
            normalized = f"{normalized[: origins[start]]} {normalized[end:]}"
        return " ".join(normalized.split()).strip(_QUERY_TRIM_CHARS)
