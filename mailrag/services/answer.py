from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

from mailrag.clients.ollama_client import OllamaClient
from mailrag.core.errors import RagCoreError, user_message_for
from mailrag.schemas.api import AnswerResult, Citation
from mailrag.services.intent import extract_person_name, is_mail_question
from mailrag.services.retrieval import RetrievedCandidate

LOGGER = logging.getLogger(__name__)

SNIPPET_CHARS = 150
PREVIEW_CHARS = 150
MAX_FALLBACK_ITEMS = 5
CONTEXT_SEPARATOR = "\n\n---\n\n"
_REFERENCE_RE = re.compile(r"\[(\d+)\]")
_MARKER_RE = re.compile(r"( ?)\[(\d+)\]")
_FALLBACK_SENTENCE_RE = re.compile(r"[.!?]+")

SYSTEM_PROMPT = """You are an assistant that answers questions using the user's own emails and documents.

Rules:
1. Use only information from the provided CONTEXT.
2. Cite every fact with the number of its document, for example [1] or [2].
3. Only cite document numbers that appear in the CONTEXT.
4. If the question asks for emails from a person, only use emails sent by that person.
5. Be concise. Use short paragraphs and bullet points.
6. If the context does not answer the question, say so instead of guessing.

Format:
**Summary**
2-3 sentences that answer the question, with citations.

**Details**
- One bullet per relevant email or document: subject or title, sender and date, with its citation."""


def no_results_message(question: str, person_name: str | None = None) -> str:
    lower = (question or "").lower()
    if person_name:
        return f"No emails found from {person_name} in your synced emails."
    if "email" in lower or "mail" in lower:
        if "approval" in lower or "approve" in lower:
            return "No emails requesting approval were found in your synced emails."
        if "meeting" in lower or "meet" in lower:
            return "No emails about meetings were found in your synced emails."
        if "interview" in lower:
            return "No interview-related emails were found in your synced emails."
        return "No relevant emails were found in your synced emails to answer this question."
    if "interview" in lower or "meeting" in lower or "meet" in lower:
        return "No interview or meeting-related emails were found in your synced emails."
    if "document" in lower or "file" in lower:
        return "No relevant documents were found in your synced files to answer this question."
    return "I couldn't find any relevant information in your synced sources to answer this question."


def _truncate(text: str, limit: int) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[:limit].rstrip() + "..."


def _sender_of(candidate: RetrievedCandidate) -> str:
    metadata = candidate.metadata
    return metadata.from_name or metadata.sender or metadata.author or "Unknown"


def _date_of(candidate: RetrievedCandidate) -> str:
    metadata = candidate.metadata
    return metadata.date or metadata.date_iso or metadata.modified_time or "Unknown date"


def build_context(candidates: list[RetrievedCandidate], chunk_max_chars: int) -> str:
    blocks = []
    for number, candidate in enumerate(candidates, start=1):
        subject = candidate.metadata.subject or candidate.title or "Untitled"
        header = f"[Document {number}]\nFrom: {_sender_of(candidate)} | Subject: {subject} | Date: {_date_of(candidate)}"
        blocks.append(f"{header}\n{_truncate(candidate.text, chunk_max_chars)}")
    return CONTEXT_SEPARATOR.join(blocks)


def build_user_prompt(question: str, context: str) -> str:
    return (
        f"QUESTION: {question}\n\nCONTEXT:\n{context}\n\n"
        "Please provide a detailed answer based on the context above."
    )


def template_answer(question: str, candidates: list[RetrievedCandidate]) -> str:
    """Answer built from candidate metadata and sentences alone, used when generation fails."""
    lower = question.lower()
    question_words = [word for word in lower.split() if len(word) > 3]
    mail_question = is_mail_question(question)
    email_items: list[str] = []
    key_points: list[str] = []

    for number, candidate in enumerate(candidates, start=1):
        if mail_question:
            subject = candidate.metadata.subject or candidate.title or "No Subject"
            preview = candidate.text[:PREVIEW_CHARS].strip()
            email_items.append(f"- **{subject}** [{number}]\n  From: {_sender_of(candidate)} | Date: {_date_of(candidate)}\n  {preview}...")
            if len(preview) > 50:
                key_points.append(f"- {preview[:100]}... [{number}]")
            continue
        for sentence in _FALLBACK_SENTENCE_RE.split(candidate.text):
            cleaned = sentence.strip()
            if len(cleaned) <= 30:
                continue
            sentence_lower = cleaned.lower()
            matches = sum(1 for word in question_words if word in sentence_lower)
            if matches >= 2 and not any(cleaned[:50] in point for point in key_points):
                key_points.append(f"- {cleaned} [{number}]")

    email_items = email_items[:MAX_FALLBACK_ITEMS]
    key_points = key_points[:MAX_FALLBACK_ITEMS]
    if not email_items and not key_points:
        return (
            f"I found {len(candidates)} document(s) but couldn't extract information that directly answers "
            "your question. Please try rephrasing or asking a more specific question."
        )

    sections = []
    if "who" in lower or "from" in lower:
        senders: list[str] = []
        for candidate in candidates:
            name = candidate.metadata.from_name
            if name and name not in senders:
                senders.append(name)
        suffix = f" from {', '.join(senders[:3])}" if senders else ""
        sections.append(f"**Summary**\nFound {len(candidates)} email(s){suffix}.")
    else:
        sections.append(f"**Summary**\nFound {len(candidates)} relevant source(s) matching your query.")
    if email_items:
        sections.append("**Found Emails**\n" + "\n\n".join(email_items))
    if key_points:
        sections.append("**Key Points**\n" + "\n".join(key_points))
    return "\n\n".join(sections)


def deep_link(candidate: RetrievedCandidate) -> str | None:
    metadata = candidate.metadata
    if candidate.source_type == "gmail":
        message_id = metadata.message_id or candidate.source_item_id
        owner = metadata.owner_email
        base = f"https://mail.google.com/mail/u/0/?authuser={quote(owner, safe='')}" if owner else "https://mail.google.com/mail/u/0/"
        subject = (metadata.subject or "").strip()
        if subject:
            search = quote('subject:"' + subject + '"', safe="")
            return f"{base}#search/{search}+in:anywhere"
        if metadata.thread_id:
            return f"{base}#all/{metadata.thread_id}"
        if message_id:
            return f"{base}#search/rfc822msgid:{message_id}"
        return None
    if candidate.source_type == "drive" and candidate.source_item_id:
        if metadata.web_view_link:
            return metadata.web_view_link
        mime_type = metadata.mime_type or ""
        if "google-apps.document" in mime_type:
            return f"https://docs.google.com/document/d/{candidate.source_item_id}/edit"
        if "google-apps.spreadsheet" in mime_type:
            return f"https://docs.google.com/spreadsheets/d/{candidate.source_item_id}/edit"
        if "google-apps.presentation" in mime_type:
            return f"https://docs.google.com/presentation/d/{candidate.source_item_id}/edit"
        return f"https://drive.google.com/file/d/{candidate.source_item_id}/view"
    return candidate.url


def citation_title(candidate: RetrievedCandidate) -> str:
    metadata = candidate.metadata
    if metadata.subject:
        return metadata.subject
    if metadata.from_name:
        kind = "email" if candidate.source_type == "gmail" else "document"
        return f"{metadata.from_name}'s {kind}"
    return candidate.title or "Untitled"


@dataclass
class _CitationGroup:
    candidate: RetrievedCandidate
    url: str | None


def resolve_citations(answer: str, used: list[RetrievedCandidate]) -> tuple[str, list[Citation]]:
    """Number citations in reference order and rewrite the answer's [n] markers to match.

    Context numbers that share a deep link collapse into one citation. Markers that
    point outside the context are dropped from the answer.
    """
    groups: list[_CitationGroup] = []
    group_of_number: dict[int, int] = {}
    group_by_key: dict[str, int] = {}
    for number, candidate in enumerate(used, start=1):
        url = deep_link(candidate)
        key = url or f"{candidate.source_type}:{candidate.source_item_id}:{candidate.chunk_index}"
        if key not in group_by_key:
            group_by_key[key] = len(groups)
            groups.append(_CitationGroup(candidate=candidate, url=url))
        group_of_number[number] = group_by_key[key]

    ordered: list[int] = []
    for match in _REFERENCE_RE.finditer(answer):
        group_index = group_of_number.get(int(match.group(1)))
        if group_index is not None and group_index not in ordered:
            ordered.append(group_index)
    ordered.extend(index for index in range(len(groups)) if index not in ordered)
    final_number = {group_index: position for position, group_index in enumerate(ordered, start=1)}

    def _renumber(match: re.Match[str]) -> str:
        group_index = group_of_number.get(int(match.group(2)))
        if group_index is None:
            return ""
        return f"{match.group(1)}[{final_number[group_index]}]"

    rewritten = _MARKER_RE.sub(_renumber, answer)

    citations = []
    for group_index in ordered:
        group = groups[group_index]
        candidate = group.candidate
        metadata = candidate.metadata
        citations.append(
            Citation(
                number=final_number[group_index],
                source_type=candidate.source_type,
                title=citation_title(candidate),
                url=group.url,
                provider_item_id=metadata.message_id or candidate.source_item_id,
                thread_id=metadata.thread_id,
                owner_account_id=metadata.owner_email,
                score=candidate.similarity,
                snippet=_truncate(candidate.text, SNIPPET_CHARS),
                from_name=metadata.from_name or metadata.sender,
                date_iso=metadata.date_iso or metadata.date or metadata.modified_time,
            )
        )
    return rewritten, citations


class AnswerSynthesizer:
    def __init__(
        self,
        generator: OllamaClient,
        *,
        max_chunks: int | None = None,
        chunk_max_chars: int | None = None,
    ):
        from mailrag.core.config import settings

        self.generator = generator
        self.max_chunks = int(max_chunks or settings.RAG_MAX_CHUNKS)
        self.chunk_max_chars = int(chunk_max_chars or settings.RAG_CHUNK_MAX_CHARS)

    def synthesize(
        self,
        question: str,
        candidates: list[RetrievedCandidate],
        person_name: str | None = None,
    ) -> AnswerResult:
        if not candidates:
            message = no_results_message(question, person_name if person_name is not None else extract_person_name(question))
            return AnswerResult(answer=message, citations=[], no_results_message=message)

        used = candidates[: self.max_chunks]
        prompt = build_user_prompt(question, build_context(used, self.chunk_max_chars))
        degraded = False
        error_code = None
        notice = None
        try:
            answer = self.generator.generate(prompt, SYSTEM_PROMPT)
        except RagCoreError as exc:
            LOGGER.warning("answer_generation_degraded", extra={"error_code": exc.error_code, "chunks": len(used)})
            answer = template_answer(question, used)
            degraded = True
            error_code = exc.error_code
            notice = user_message_for(exc)

        answer, citations = resolve_citations(answer, used)
        return AnswerResult(answer=answer, citations=citations, degraded=degraded, error_code=error_code, notice=notice)
