#!/usr/bin/env python3
"""Subtitle translation.

This module provides:
- TranslateService implementations for the Google v1 web endpoint and DeepLX
- TranslationCache: a memo of translations keyed by lower-cased source text
- SubTranslator: translates the entries ahead of the playback cursor
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

import requests

from .errors import ConfigurationError, EngineError
from .languages import Language, get_language
from .logging_utils import component_tag, debug, warn
from .models import ResolvedConfig, SubtitleEntry
from .text_processing import single_line
from .timeline import SubtitleTimeline


class TranslationError(EngineError):
    """A translation request failed. Carries status code and body when known."""


class TranslationConfigError(ConfigurationError):
    """Translation cannot run with the current languages or service settings."""


# ============================================================
# Services
# ============================================================

class TranslateService(ABC):
    """Translates single subtitle texts between one fixed language pair."""

    name = "translate"

    def __init__(self, config: ResolvedConfig) -> None:
        self.config = config
        self.session = requests.Session()
        self.source: Optional[str] = None
        self.target: Optional[str] = None

    def initialize(self, src: Language, target: str) -> None:
        """Bind the language pair.

        Raises:
            TranslationConfigError: If the source is unknown, equals the
                target, or is not supported
        """
        if src.is_unknown:
            raise TranslationConfigError("source language is unknown")
        target_lang = get_language(target)
        if target_lang.is_unknown:
            raise TranslationConfigError(f"target language is not supported: {target}")
        if src.code == target_lang.code:
            raise TranslationConfigError("source and target language are the same")
        self.source = self.source_code(src.code)
        self.target = self.target_code(target)

    def source_code(self, code: str) -> str:
        return code

    def target_code(self, code: str) -> str:
        return code

    @abstractmethod
    def translate(self, text: str) -> str:
        """Raises:
            TranslationError: If the request fails or the reply is malformed
        """

    def _check_initialized(self) -> None:
        if self.source is None or self.target is None:
            raise RuntimeError(f"{self.name} service must be initialized first")

    def close(self) -> None:
        self.session.close()


# Google wants a region for a few languages
GOOGLE_REGIONS: Dict[str, str] = {
    "zh": "zh-CN",
    "pt": "pt-PT",
    "fr": "fr-FR",
}


class GoogleV1Service(TranslateService):
    """The keyless translate.googleapis.com `translate_a/single` endpoint."""

    name = "google"

    def source_code(self, code):
        return GOOGLE_REGIONS.get(code, code)

    def target_code(self, code):
        code = code.strip()
        return GOOGLE_REGIONS.get(code.lower(), code)

    def translate(self, text):
        self._check_initialized()
        params = {
            "client": "gtx",
            "sl": self.source,
            "tl": self.target,
            "dt": "t",
            "q": text,
        }
        url = f"{self.config.google_endpoint.rstrip('/')}/translate_a/single"
        try:
            resp = self.session.get(url, params=params, timeout=self.config.translate_timeout)
        except requests.RequestException as e:
            raise TranslationError(f"cannot request {self.name}: {e}") from e
        if not resp.ok:
            raise TranslationError(f"cannot request {self.name}", status_code=resp.status_code,
                                   response=resp.text)
        try:
            data = resp.json()
            parts = [str(part[0]).strip() for part in data[0] if part and part[0]]
        except (ValueError, TypeError, IndexError) as e:
            raise TranslationError("cannot parse response as JSON", status_code=resp.status_code,
                                   response=resp.text) from e
        return "\n".join(parts)


class DeepLXService(TranslateService):
    """A self-hosted DeepLX server."""

    name = "deeplx"

    def __init__(self, config):
        if not config.deeplx_endpoint.strip():
            raise TranslationConfigError("endpoint for deeplx is not configured")
        super().__init__(config)

    def source_code(self, code):
        return code.upper()

    def target_code(self, code):
        return code.strip().upper()

    def translate(self, text):
        self._check_initialized()
        url = f"{self.config.deeplx_endpoint.rstrip('/')}/translate"
        body = {"text": text, "source_lang": self.source, "target_lang": self.target}
        try:
            resp = self.session.post(url, json=body, timeout=self.config.translate_timeout)
        except requests.RequestException as e:
            raise TranslationError(f"cannot request {self.name}: {e}") from e
        if not resp.ok:
            raise TranslationError(f"cannot request {self.name}", status_code=resp.status_code,
                                   response=resp.text)
        try:
            return resp.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise TranslationError("unexpected response", status_code=resp.status_code,
                                   response=resp.text) from e


TRANSLATE_SERVICES: Dict[str, type] = {
    GoogleV1Service.name: GoogleV1Service,
    DeepLXService.name: DeepLXService,
}


def create_service(config: ResolvedConfig) -> TranslateService:
    """Raises:
        TranslationConfigError: If the service name is unknown or misconfigured
    """
    cls = TRANSLATE_SERVICES.get(config.translate_service.lower())
    if cls is None:
        raise TranslationConfigError(f"unknown translation service: {config.translate_service}")
    return cls(config)


# ============================================================
# Memo Cache
# ============================================================

class TranslationCache:
    """Memoizes a service's translations by lower-cased source text.

    When the source language already equals the target, texts are returned
    unchanged and the service is never initialized.
    """

    def __init__(self, service: TranslateService) -> None:
        self.service = service
        self._lock = threading.Lock()
        self._memo: Dict[str, str] = {}
        self._passthrough = False

    def initialize(self, src: Language, target: str) -> None:
        self.clear()
        self._passthrough = not src.is_unknown and src.code == get_language(target).code
        if not self._passthrough:
            self.service.initialize(src, target)

    def translate(self, text: str) -> str:
        if self._passthrough:
            return text
        key = text.lower()
        with self._lock:
            hit = self._memo.get(key)
        if hit is not None:
            return hit
        # request outside the lock; concurrent misses on one key both hit the service
        result = self.service.translate(text)
        with self._lock:
            self._memo[key] = result
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._memo)

    def clear(self) -> None:
        with self._lock:
            self._memo.clear()

    def close(self) -> None:
        self.clear()
        self.service.close()


# ============================================================
# Translate-ahead Worker
# ============================================================

class SubTranslator:
    """Translates the entries at and after the cursor of one timeline.

    Args:
        timeline: Slot to translate
        config: Resolved configuration (service, target, counts)
        cache_factory: Builds the cache wrapping a fresh service
    """

    def __init__(
        self,
        timeline: SubtitleTimeline,
        config: ResolvedConfig,
        *,
        cache_factory: Optional[Callable[[ResolvedConfig], TranslationCache]] = None,
    ) -> None:
        self.timeline = timeline
        self.config = config
        self._cache_factory = cache_factory or (lambda cfg: TranslationCache(create_service(cfg)))
        self._cache: Optional[TranslationCache] = None
        self._lock = threading.Lock()
        self._in_progress: Set[int] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.translate_max_concurrent),
            thread_name_prefix=f"translate-{timeline.slot + 1}",
        )
        self._tag = component_tag("Translator", timeline.slot)

    @property
    def enabled(self) -> bool:
        return self.timeline.config.enabled_translated

    def _disable(self, reason: str) -> None:
        self.timeline.config.enabled_translated = False
        warn(f"translation disabled: {reason}", quiet=self.config.quiet, tag=self._tag)

    def _ensure_cache(self) -> Optional[TranslationCache]:
        with self._lock:
            if self._cache is not None:
                return self._cache
            try:
                cache = self._cache_factory(self.config)
                cache.initialize(self.timeline.language, self.config.translate_target)
            except TranslationConfigError as e:
                self._disable(str(e))
                return None
            self._cache = cache
            return cache

    def translate_ahead(self, index: Optional[int] = None) -> List[Future]:
        """Submit translations for up to translate_count entries from index.

        Args:
            index: First entry to translate; the cursor index when None

        Returns:
            Futures of the submitted translations
        """
        if not self.enabled:
            return []
        entries = self.timeline.entries
        if not entries:
            return []
        cache = self._ensure_cache()
        if cache is None:
            return []

        start = self.timeline.current_index if index is None else index
        if start < 0:
            start = 0
        end = min(start + self.config.translate_count, len(entries))

        futures: List[Future] = []
        for entry in entries[start:end]:
            if not entry.text or not entry.text.strip() or entry.is_translated:
                continue
            with self._lock:
                if entry.index in self._in_progress:
                    continue
                self._in_progress.add(entry.index)
            futures.append(self._executor.submit(self._translate_entry, cache, entry))
        return futures

    def _translate_entry(self, cache: TranslationCache, entry: SubtitleEntry) -> Optional[str]:
        try:
            text = single_line(entry.text or "")
            translated = cache.translate(text)
        except TranslationError as e:
            self._disable(f"entry {entry.index}: {e}")
            self.reset()
            return None
        finally:
            with self._lock:
                self._in_progress.discard(entry.index)
        self.timeline.update_translation(entry, translated)
        debug(f"translated {entry.index}: {translated}", verbose=self.config.verbose, tag=self._tag)
        return translated

    def reset(self) -> None:
        """Drop the service and memo, e.g. after a language change."""
        with self._lock:
            cache, self._cache = self._cache, None
        if cache is not None:
            cache.close()

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.reset()
