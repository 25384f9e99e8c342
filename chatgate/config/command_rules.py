"""Command trigger keyword loader with mtime-based cache."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from threading import Lock
from typing import Any

import yaml

from chatgate.config.settings import settings
from chatgate.util.logger import logger


COMMAND_KINDS = ("weather", "news", "book", "search")

_DEFAULT_RULES: dict[str, Any] = {
    "locales": {
        "bn": {
            "weather": {"triggers": ["আবহাওয়া", "আবহাওয়ার খবর", "তাপমাত্রা", "বৃষ্টি হবে"]},
            "news": {"triggers": ["আজকের খবর", "সর্বশেষ খবর", "খবর", "সংবাদ"]},
            "book": {"triggers": ["বই খুঁজুন", "বই খোঁজ", "বই"]},
            "search": {"triggers": ["সার্চ করুন", "সার্চ", "খুঁজুন", "খোঁজ"]},
        },
        "en": {
            "weather": {"triggers": ["weather", "forecast", "temperature"]},
            "news": {"triggers": ["latest news", "headlines", "news"]},
            "book": {"triggers": ["find book", "book about", "book"]},
            "search": {"triggers": ["search for", "search", "google", "look up"]},
        },
    },
    "cities": {
        "চট্টগ্রাম": "Chittagong",
        "chittagong": "Chittagong",
        "chattogram": "Chittagong",
        "ঢাকা": "Dhaka",
        "dhaka": "Dhaka",
        "সিলেট": "Sylhet",
        "sylhet": "Sylhet",
        "খুলনা": "Khulna",
        "khulna": "Khulna",
        "রাজশাহী": "Rajshahi",
        "rajshahi": "Rajshahi",
        "বরিশাল": "Barisal",
        "barisal": "Barisal",
        "রংপুর": "Rangpur",
        "rangpur": "Rangpur",
        "ময়মনসিংহ": "Mymensingh",
        "mymensingh": "Mymensingh",
        "কুমিল্লা": "Comilla",
        "comilla": "Comilla",
        "কক্সবাজার": "Cox's Bazar",
        "cox's bazar": "Cox's Bazar",
    },
}

_CACHE_LOCK = Lock()
_CACHE_PATH = ""
_CACHE_MTIME_NS = -1
_CACHE_RULES: dict[str, Any] | None = None


def _resolve_rules_file(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    app_root = Path(__file__).resolve().parents[2]
    candidates = [Path.cwd() / candidate, app_root / candidate]
    for item in candidates:
        if item.exists():
            return item.resolve()
    return candidates[-1].resolve()


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            base[key] = _deep_merge(dict(base[key]), value)
        else:
            base[key] = value
    return base


def load_command_rules(path: str | None = None) -> dict[str, Any]:
    global _CACHE_PATH, _CACHE_MTIME_NS, _CACHE_RULES

    rules_path = _resolve_rules_file(path or settings.command_rules_path)
    path_key = str(rules_path)
    mtime_ns = rules_path.stat().st_mtime_ns if rules_path.exists() else -1

    with _CACHE_LOCK:
        if _CACHE_RULES is not None and _CACHE_PATH == path_key and _CACHE_MTIME_NS == mtime_ns:
            return deepcopy(_CACHE_RULES)

        rules = deepcopy(_DEFAULT_RULES)
        if rules_path.exists():
            raw = yaml.safe_load(rules_path.read_text(encoding="utf-8")) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"command rules file must be a mapping: {rules_path}")
            rules = _deep_merge(rules, raw)
            logger.info("command rules loaded path=%s", rules_path)
        else:
            logger.info("command rules file not found, using defaults path=%s", rules_path)

        _CACHE_PATH = path_key
        _CACHE_MTIME_NS = mtime_ns
        _CACHE_RULES = rules
        return deepcopy(rules)


def triggers_for_locales(rules: dict[str, Any], locales: list[str]) -> dict[str, list[str]]:
    """Merge trigger lists of the given locales, keeping locale order and dropping duplicates."""
    merged: dict[str, list[str]] = {kind: [] for kind in COMMAND_KINDS}
    locale_rules = rules.get("locales") or {}
    for locale in locales:
        section = locale_rules.get(locale)
        if not isinstance(section, dict):
            logger.warning("command rules missing locale=%s", locale)
            continue
        for kind in COMMAND_KINDS:
            entry = section.get(kind) or {}
            for trigger in entry.get("triggers") or []:
                text = str(trigger).strip()
                if text and text not in merged[kind]:
                    merged[kind].append(text)
    return merged
