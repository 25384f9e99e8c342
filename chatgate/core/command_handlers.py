"""
Command handlers: weather, news headlines, book lookup and web search.

Every handler makes one outbound HTTP call with a finite timeout and returns a
plain-text reply. Any failure raises CommandHandlerError; the caller never
falls back to the language-model chain for a detected command.
"""

from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET
from typing import Any
from urllib.parse import quote

import httpx

from chatgate.config.settings import settings
from chatgate.core.commands import BookCommand, Command, NewsCommand, SearchCommand, WeatherCommand
from chatgate.core.errors import CommandHandlerError
from chatgate.providers.upstream import get_upstream_async_client, transport_error_detail, upstream_http_timeout
from chatgate.util.logger import get_logger

logger = get_logger("commands")


class CommandHandlers:
    def __init__(self, client: httpx.AsyncClient | None = None, timeout_seconds: float | None = None) -> None:
        self._client = client
        self.timeout_seconds = float(timeout_seconds or settings.command_timeout_seconds)

    async def _http_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_upstream_async_client()

    async def _get(self, kind: str, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        client = await self._http_client()
        try:
            response = await asyncio.wait_for(
                client.get(url, params=params, timeout=upstream_http_timeout(self.timeout_seconds)),
                timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise CommandHandlerError(kind, f"unreachable: {transport_error_detail(exc)}") from exc
        if response.status_code >= 400:
            raise CommandHandlerError(kind, f"http_error:{response.status_code}")
        return response

    def _json(self, kind: str, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise CommandHandlerError(kind, "invalid_response_body") from exc
        if not isinstance(body, dict):
            raise CommandHandlerError(kind, "invalid_response_body")
        return body

    async def handle(self, command: Command) -> str:
        logger.info("command handler start kind=%s", command.kind)
        if isinstance(command, WeatherCommand):
            reply = await self.weather(command)
        elif isinstance(command, NewsCommand):
            reply = await self.news(command)
        elif isinstance(command, BookCommand):
            reply = await self.book(command)
        elif isinstance(command, SearchCommand):
            reply = await self.search(command)
        else:
            raise CommandHandlerError(getattr(command, "kind", "unknown"), "unsupported_command")
        if not reply.strip():
            raise CommandHandlerError(command.kind, "empty_result")
        return reply

    async def weather(self, command: WeatherCommand) -> str:
        url = f"{settings.weather_base_url.rstrip('/')}/{quote(command.city)}"
        response = await self._get(command.kind, url, params={"format": "3"})
        text = response.text.strip()
        if not text:
            raise CommandHandlerError(command.kind, "empty_result")
        return text

    async def news(self, command: NewsCommand) -> str:
        response = await self._get(command.kind, settings.news_feed_url)
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as exc:
            raise CommandHandlerError(command.kind, "invalid_feed") from exc
        titles = []
        for item in root.iter("item"):
            title = (item.findtext("title") or "").strip()
            if title:
                titles.append(title)
            if len(titles) >= settings.news_max_items:
                break
        if not titles:
            raise CommandHandlerError(command.kind, "empty_result")
        return "\n".join(f"{index}. {title}" for index, title in enumerate(titles, start=1))

    async def book(self, command: BookCommand) -> str:
        response = await self._get(
            command.kind,
            settings.book_search_url,
            params={"q": command.query, "limit": settings.book_max_results},
        )
        body = self._json(command.kind, response)
        docs = body.get("docs")
        if not isinstance(docs, list) or not docs:
            return f"No books found for \"{command.query}\"."
        lines = []
        for doc in docs[: settings.book_max_results]:
            if not isinstance(doc, dict):
                continue
            title = str(doc.get("title") or "").strip()
            if not title:
                continue
            authors = doc.get("author_name") or []
            line = title
            if isinstance(authors, list) and authors:
                line += f" by {authors[0]}"
            if doc.get("first_publish_year"):
                line += f" ({doc['first_publish_year']})"
            lines.append(f"- {line}")
        if not lines:
            return f"No books found for \"{command.query}\"."
        return "\n".join(lines)

    async def search(self, command: SearchCommand) -> str:
        response = await self._get(
            command.kind,
            settings.web_search_url,
            params={"q": command.query, "format": "json", "no_html": "1", "skip_disambig": "1"},
        )
        body = self._json(command.kind, response)
        abstract = str(body.get("AbstractText") or "").strip()
        if abstract:
            source = str(body.get("AbstractURL") or "").strip()
            return f"{abstract}\n{source}" if source else abstract
        answer = str(body.get("Answer") or "").strip()
        if answer:
            return answer
        topics = body.get("RelatedTopics")
        for topic in topics if isinstance(topics, list) else []:
            if isinstance(topic, dict) and str(topic.get("Text") or "").strip():
                return str(topic["Text"]).strip()
        return f"No results found for \"{command.query}\"."
