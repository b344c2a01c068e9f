"""
Classify OAuth helper output.

Helpers are third-party programs with no structured protocol, so all of the
matching rules live here: ANSI stripping, authorization URL detection, token
and success-marker detection, and the error-line heuristics used when a
helper exits cleanly without saying anything useful.
"""

from __future__ import annotations

import codecs
import re
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlparse

from ..config import config

_ANSI_CSI_PATTERN = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC_PATTERN = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ANSI_SINGLE_PATTERN = re.compile(r"\x1b[@-Z\\-_]")
_CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_URL_PATTERN = re.compile(r"https?://[^\s<>\"'`]+", re.IGNORECASE)
_URL_TRAILING_PUNCTUATION = ".,;:)]}'\""
_LINE_BREAK_PATTERN = re.compile(r"\r\n|\r|\n")

_TOKEN_PATTERN = re.compile(r"access_token[\"'\s:=]+([A-Za-z0-9\-_.~+/]{8,}=*)", re.IGNORECASE)
_SUCCESS_PATTERNS = (
    re.compile(r"\boauth\b.*\bsuccess(?:ful|fully)?\b", re.IGNORECASE),
    re.compile(r"\bauthentication\s+(?:successful|succeeded|complete|completed)\b", re.IGNORECASE),
    re.compile(r"\bauthorization\s+(?:successful|succeeded|complete|completed)\b", re.IGNORECASE),
    re.compile(r"\btokens?\s+(?:received|saved|stored)\b", re.IGNORECASE),
    re.compile(r"\bapi key saved\b", re.IGNORECASE),
    re.compile(r"\bproxy established successfully\b", re.IGNORECASE),
    re.compile(r"\bauthorized\b", re.IGNORECASE),
)
# A success phrase under any of these is a failure report
_NEGATION_PATTERN = re.compile(
    r"\b(?:not|no|never|cannot|without|incomplete|unsuccessful|denied)\b|n't\b",
    re.IGNORECASE,
)
_ERROR_PATTERNS = (
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"\bfailed\b", re.IGNORECASE),
    re.compile(r"\bexception\b", re.IGNORECASE),
    re.compile(r"\bunauthorized\b", re.IGNORECASE),
    re.compile(r"\b(?:access\s+)?denied\b", re.IGNORECASE),
)
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


def strip_ansi(text: str) -> str:
    cleaned = _ANSI_OSC_PATTERN.sub("", text)
    cleaned = _ANSI_CSI_PATTERN.sub("", cleaned)
    cleaned = _ANSI_SINGLE_PATTERN.sub("", cleaned)
    return _CONTROL_PATTERN.sub("", cleaned)


@dataclass(frozen=True)
class UrlFound:
    url: str


@dataclass(frozen=True)
class TokenFound:
    # None means a success marker without an inline token
    token: Optional[str]


@dataclass(frozen=True)
class NoSignal:
    pass


ScanSignal = UrlFound | TokenFound | NoSignal

NO_SIGNAL = NoSignal()


class OutputScanner:
    def __init__(
        self,
        *,
        ignored_urls: Iterable[str] = (),
        window_chars: int | None = None,
        tail_lines: int | None = None,
    ) -> None:
        self._ignored = {_normalize_url(url) for url in ignored_urls if url}
        self._window_chars = int(window_chars or config.OAUTH.OUTPUT_BUFFER_MAX_CHARS)
        self._tail_lines = int(tail_lines or config.OAUTH.OUTPUT_TAIL_LINES)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._window = ""
        self._tail: list[str] = []
        self.url: Optional[str] = None
        self.token: Optional[str] = None
        self.success_seen = False
        self.error_seen = False

    @property
    def window(self) -> str:
        return self._window

    def feed(self, chunk: str) -> list[ScanSignal]:
        """Scan a raw chunk; text after the last line break waits for the next chunk."""
        if not chunk:
            return []
        data = self._pending + chunk
        # A trailing "\r" may be the first half of "\r\n"
        hold_cr = data.endswith("\r")
        parts = _LINE_BREAK_PATTERN.split(data[:-1] if hold_cr else data)
        pending = parts.pop() + ("\r" if hold_cr else "")
        # An unterminated run longer than the window is scanned in window-sized pieces
        while len(pending) > self._window_chars:
            parts.append(pending[:self._window_chars])
            pending = pending[self._window_chars:]
        self._pending = pending
        signals: list[ScanSignal] = []
        for line in parts:
            signals.extend(self._scan_line(line))
        return signals

    def feed_bytes(self, chunk: bytes) -> list[ScanSignal]:
        return self.feed(self._decoder.decode(chunk))

    def feed_line(self, line: str) -> list[ScanSignal]:
        return self.feed(line + "\n")

    def finish(self) -> list[ScanSignal]:
        """Flush the unterminated remainder at end of stream."""
        pending, self._pending = self._pending + self._decoder.decode(b"", final=True), ""
        if not pending.strip("\r"):
            return []
        return self._scan_line(pending.strip("\r"))

    def tail(self, lines: int = 3) -> str:
        return " | ".join(self._tail[-lines:])

    def _scan_line(self, raw: str) -> list[ScanSignal]:
        line = strip_ansi(raw).strip()
        if not line:
            return []
        self._window = (self._window + line + "\n")[-self._window_chars:]
        self._tail.append(line)
        if len(self._tail) > self._tail_lines:
            self._tail = self._tail[-self._tail_lines:]
        error_line = any(p.search(line) for p in _ERROR_PATTERNS)
        if error_line:
            self.error_seen = True

        signals: list[ScanSignal] = []
        if self.url is None:
            url = self._extract_auth_url(line)
            if url:
                self.url = url
                signals.append(UrlFound(url))

        if self.token is None:
            match = _TOKEN_PATTERN.search(line)
            if match:
                self.token = match.group(1)
                self.success_seen = True
                signals.append(TokenFound(self.token))
                return signals
        if not self.success_seen and not error_line and _is_success_line(line):
            self.success_seen = True
            signals.append(TokenFound(None))
        return signals

    def _extract_auth_url(self, line: str) -> Optional[str]:
        for match in _URL_PATTERN.finditer(line):
            candidate = match.group(0).rstrip(_URL_TRAILING_PUNCTUATION)
            parsed = urlparse(candidate)
            host = (parsed.hostname or "").lower()
            if not host or host in _LOOPBACK_HOSTS:
                continue
            if _normalize_url(candidate) in self._ignored:
                continue
            return candidate
        return None


def _normalize_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


def _is_success_line(line: str) -> bool:
    if _NEGATION_PATTERN.search(line):
        return False
    return any(p.search(line) for p in _SUCCESS_PATTERNS)
