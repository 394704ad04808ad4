"""Question analysis: sender/person detection, keyword extraction and source inference."""

from __future__ import annotations

import re
from dataclasses import dataclass

_NAME = r"([A-Z][a-z]+(?:\s+[A-Z][a-z\.]+)*)"
_PERSON_PATTERNS = [
    re.compile(rf"(?:from|by|sent by|emails? from|emails? by)\s+{_NAME}", re.IGNORECASE),
    re.compile(
        rf"(?:emails? )?(?:regarding|about|related to|concerning|re:)?.+?\b{_NAME}(?:'s)?\s+(?:emails?|messages?|correspondence)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:show|find|search for|get|list|display|see)\s+(?:me\s+)?(?:all\s+)?(?:the\s+)?(?:recent\s+)?"
        rf"(?:emails?|messages?|correspondence)\s+(?:from|by|sent by|authored by|written by)\s+{_NAME}",
        re.IGNORECASE,
    ),
    re.compile(rf"{_NAME}(?:'s)?\s+(?:emails?|messages?|correspondence)", re.IGNORECASE),
    re.compile(rf"(?:emails?|messages?)\s+(?:from|by|sent by|authored by|written by)\s+{_NAME}", re.IGNORECASE),
]
_CAPITALIZED_NAME_RE = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z\.]+)+)\b")
_TITLE_RE = re.compile(r"^(mr|mrs|ms|dr|prof)\.?$", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_TRAILING_FROM_RE = re.compile(r"\bfrom\b\s+(.+?)\s*$", re.IGNORECASE)
_TARGET_CUTOFF_RE = re.compile(
    r"\s+(?:about|regarding|re|on|in|during|since|before|after|last|this|yesterday|today)\b.*$",
    re.IGNORECASE,
)
_KEYWORD_STRIP_RE = re.compile(r"[^a-z0-9@\s_-]")

_COMMON_WORDS = {
    "the", "and", "for", "are", "but", "with", "about", "your", "from", "have", "this", "that",
    "me", "my", "all", "show", "find",
}
_GENERIC_SENDERS = {"me", "you", "today", "yesterday", "this", "that", "it", "mail", "email", "emails", "mails"}
_SENDER_CUES = (" from ", "sender", "sent by", "emails from", "mails from")
_KEYWORD_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "to", "of", "in", "on", "for", "with", "from", "by", "at", "as",
    "is", "are", "was", "were", "i", "me", "my", "you", "your", "we", "our", "they", "them", "their",
    "email", "emails", "mail", "gmail", "message", "messages", "find", "show", "get", "give", "tell",
    "about", "regarding", "related", "please", "latest", "recent", "last",
}
_MAIL_WORDS = ("email", "mail", "inbox", "gmail")
_DRIVE_WORDS = ("drive", "document", "file", "pdf", "spreadsheet", "doc")

ALL_SOURCE_TYPES = ["gmail", "drive"]


@dataclass(frozen=True)
class SenderIntent:
    type: str
    value: str


def extract_person_name(question: str | None) -> str | None:
    query = question or ""
    for pattern in _PERSON_PATTERNS:
        match = pattern.search(query)
        if not match or not match.group(1):
            continue
        name = re.sub(r"[^\w\s]|_", " ", match.group(1).strip())
        parts = [
            part
            for part in name.split()
            if len(part) > 1 and part.lower() not in _COMMON_WORDS and not _TITLE_RE.match(part)
        ]
        if parts:
            return " ".join(parts)

    for match in _CAPITALIZED_NAME_RE.finditer(query):
        candidate = match.group(1).strip()
        words = candidate.split()
        if len(words) >= 2 and words[0].lower() not in _COMMON_WORDS:
            return candidate
    return None


def extract_first_email(text: str | None) -> str | None:
    match = _EMAIL_RE.search(text or "")
    return match.group(0) if match else None


def _clean_person_token(value: str | None) -> str:
    cleaned = (value or "").strip()
    cleaned = re.sub(r"^[\s\"']+|[\s\"'.!?]+$", "", cleaned)
    return _TARGET_CUTOFF_RE.sub("", cleaned).strip()


def detect_sender_intent(question: str | None, person_name_hint: str | None = None) -> SenderIntent | None:
    """An explicit address wins over any name heuristic."""
    q = (question or "").strip()
    if not q:
        return None
    email = extract_first_email(q)
    if email:
        return SenderIntent(type="email", value=email)

    lower = f" {q.lower()} "
    if not any(cue in lower for cue in _SENDER_CUES):
        return None

    match = _TRAILING_FROM_RE.search(q)
    raw_target = _clean_person_token(match.group(1)) if match else ""
    name = _clean_person_token(raw_target or person_name_hint or "")
    if not name or name.lower() in _GENERIC_SENDERS:
        return None
    return SenderIntent(type="name", value=name)


def extract_search_keywords(text: str | None, max_keywords: int = 6) -> list[str]:
    cleaned = _KEYWORD_STRIP_RE.sub(" ", (text or "").lower())
    keywords: list[str] = []
    for part in cleaned.split():
        if len(part) < 3 or part in _KEYWORD_STOP_WORDS or part in keywords:
            continue
        keywords.append(part)
        if len(keywords) >= max_keywords:
            break
    return keywords


def infer_source_types(question: str | None) -> list[str]:
    q = (question or "").lower()
    wants_mail = any(word in q for word in _MAIL_WORDS)
    wants_drive = any(word in q for word in _DRIVE_WORDS)
    if wants_mail and not wants_drive:
        return ["gmail"]
    if wants_drive and not wants_mail:
        return ["drive"]
    return list(ALL_SOURCE_TYPES)


def is_mail_question(question: str | None) -> bool:
    q = (question or "").lower()
    return "email" in q or "mail" in q


@dataclass(frozen=True)
class QueryIntent:
    question: str
    person_name: str | None
    sender: SenderIntent | None
    keywords: list[str]
    source_types: list[str]


def analyze_question(question: str, max_keywords: int = 6) -> QueryIntent:
    person_name = extract_person_name(question)
    return QueryIntent(
        question=question,
        person_name=person_name,
        sender=detect_sender_intent(question, person_name),
        keywords=extract_search_keywords(question, max_keywords),
        source_types=infer_source_types(question),
    )
