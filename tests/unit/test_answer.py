import re

from mailrag.core.errors import TIMEOUT_MESSAGE, UNREACHABLE_MESSAGE, BackendUnreachableError, GenerationTimeoutError
from mailrag.schemas.api import ChunkMetadata
from mailrag.services.answer import (
    AnswerSynthesizer,
    build_context,
    citation_title,
    deep_link,
    no_results_message,
    resolve_citations,
    template_answer,
)
from mailrag.services.retrieval import SEMANTIC, RetrievedCandidate


class ScriptedGenerator:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.prompts = []

    def generate(self, prompt, system_prompt=None):
        self.prompts.append((prompt, system_prompt))
        if self.error:
            raise self.error
        return self.answer


def _mail(item_id, subject, text, thread_id=None, from_name="Priya Sharma", score=0.8):
    return RetrievedCandidate(
        source_type="gmail",
        source_item_id=item_id,
        chunk_index=0,
        text=text,
        retrieval=SEMANTIC,
        title=subject,
        metadata=ChunkMetadata(
            subject=subject,
            from_name=from_name,
            thread_id=thread_id,
            message_id=item_id,
            owner_email="me@example.com",
            date="Mon, 02 Feb 2026 09:30:00 +0000",
        ),
        similarity=score,
        score=score,
    )


def _doc(item_id, title, text, mime_type):
    return RetrievedCandidate(
        source_type="drive",
        source_item_id=item_id,
        chunk_index=0,
        text=text,
        retrieval=SEMANTIC,
        title=title,
        metadata=ChunkMetadata(mime_type=mime_type),
    )


def test_no_results_message_variants():
    assert no_results_message("emails from Priya", "Priya") == "No emails found from Priya in your synced emails."
    assert "approval" in no_results_message("emails asking for approval")
    assert "meetings" in no_results_message("any email about the meeting")
    assert no_results_message("find the budget file") == (
        "No relevant documents were found in your synced files to answer this question."
    )
    assert no_results_message("what is the capital") == (
        "I couldn't find any relevant information in your synced sources to answer this question."
    )


def test_empty_candidates_return_no_results_without_generation():
    generator = ScriptedGenerator(answer="unused")

    result = AnswerSynthesizer(generator, max_chunks=6, chunk_max_chars=350).synthesize("emails from Priya", [])

    assert result.no_results_message == "No emails found from Priya in your synced emails."
    assert result.answer == result.no_results_message
    assert result.citations == []
    assert generator.prompts == []


def test_context_blocks_are_numbered_and_truncated():
    context = build_context([_mail("m1", "Budget", "x" * 400), _mail("m2", "Offsite", "short body")], 350)

    blocks = context.split("\n\n---\n\n")
    assert blocks[0].startswith("[Document 1]\nFrom: Priya Sharma | Subject: Budget | Date: Mon, 02 Feb 2026")
    assert blocks[0].endswith("x" * 350 + "...")
    assert blocks[1].startswith("[Document 2]")


def test_deep_links_per_source():
    mail = _mail("m1", "Q3 Budget", "body", thread_id="t1")
    assert deep_link(mail) == (
        "https://mail.google.com/mail/u/0/?authuser=me%40example.com#search/subject%3A%22Q3%20Budget%22+in:anywhere"
    )
    no_subject = _mail("m2", None, "body", thread_id="t2")
    assert deep_link(no_subject).endswith("#all/t2")

    assert deep_link(_doc("d1", "Plan", "x", "application/vnd.google-apps.document")) == (
        "https://docs.google.com/document/d/d1/edit"
    )
    assert deep_link(_doc("d2", "Sheet", "x", "application/vnd.google-apps.spreadsheet")).endswith("/spreadsheets/d/d2/edit")
    assert deep_link(_doc("d3", "Scan", "x", "application/pdf")) == "https://drive.google.com/file/d/d3/view"


def test_citation_title_fallbacks():
    assert citation_title(_mail("m1", "Budget", "body")) == "Budget"
    assert citation_title(_mail("m2", None, "body")) == "Priya Sharma's email"
    assert citation_title(_doc("d1", "Plan", "x", "text/plain")) == "Plan"


def test_citations_follow_answer_order_and_drop_unknown_references():
    used = [
        _mail("m1", "Budget", "Budget body"),
        _mail("m2", "Offsite", "Offsite body"),
        _mail("m3", "Hiring", "Hiring body"),
    ]

    answer, citations = resolve_citations("Offsite moved [2]. Budget approved [1] [2]. Ignore [7].", used)

    assert answer == "Offsite moved [1]. Budget approved [2] [1]. Ignore."
    assert [c.number for c in citations] == [1, 2, 3]
    assert [c.provider_item_id for c in citations] == ["m2", "m1", "m3"]


def test_citations_sharing_a_link_collapse():
    used = [
        _mail("m1", "Budget", "First budget chunk body"),
        _mail("m2", "Budget", "Second budget chunk body"),
    ]

    answer, citations = resolve_citations("See [2] and [1].", used)

    assert answer == "See [1] and [1]."
    assert len(citations) == 1


def test_every_cited_number_maps_to_a_context_candidate():
    used = [_mail(f"m{i}", f"Subject {i}", f"Body number {i}") for i in range(1, 5)]
    generator = ScriptedGenerator(answer="Summary [3] and [1]; details [4] [9].")

    result = AnswerSynthesizer(generator, max_chunks=3, chunk_max_chars=350).synthesize("status update", used)

    referenced = {int(n) for n in re.findall(r"\[(\d+)\]", result.answer)}
    numbers = {c.number for c in result.citations}
    assert referenced <= numbers
    assert {c.provider_item_id for c in result.citations} == {"m1", "m2", "m3"}
    assert "[Document 4]" not in generator.prompts[0][0]


def test_generation_timeout_falls_back_to_template_with_citations():
    candidates = [
        _mail("m1", "Budget review", "Priya asked everyone to review the budget numbers before Friday."),
        _mail("m2", "Offsite", "The offsite agenda is attached for the team."),
    ]
    generator = ScriptedGenerator(error=GenerationTimeoutError(message="timed out"))

    result = AnswerSynthesizer(generator, max_chunks=6, chunk_max_chars=350).synthesize(
        "emails from Priya about budget", candidates, "Priya"
    )

    assert result.degraded is True
    assert result.error_code == "GENERATION_TIMEOUT"
    assert result.notice == TIMEOUT_MESSAGE
    assert result.answer
    assert "**Found Emails**" in result.answer
    assert len(result.citations) == 2


def test_unreachable_backend_notice_differs_from_timeout():
    generator = ScriptedGenerator(error=BackendUnreachableError(message="refused"))

    result = AnswerSynthesizer(generator, max_chunks=6, chunk_max_chars=350).synthesize(
        "budget status", [_mail("m1", "Budget review", "Priya asked everyone to review the budget numbers.")]
    )

    assert result.error_code == "BACKEND_UNREACHABLE"
    assert result.notice == UNREACHABLE_MESSAGE


def test_successful_generation_has_no_notice():
    result = AnswerSynthesizer(ScriptedGenerator(answer="Budget moved [1]."), max_chunks=6, chunk_max_chars=350).synthesize(
        "budget status", [_mail("m1", "Budget review", "Priya asked everyone to review the budget numbers.")]
    )

    assert result.degraded is False
    assert result.notice is None


def test_template_answer_for_documents_matches_question_words():
    candidates = [
        _doc("d1", "Plan", "The launch timeline moved to April for the mobile release. Unrelated filler sentence here.", "text/plain")
    ]

    answer = template_answer("When is the launch timeline for mobile?", candidates)

    assert "The launch timeline moved to April for the mobile release [1]" in answer


def test_template_answer_without_matches_explains():
    answer = template_answer("quarterly revenue figures", [_doc("d1", "Plan", "Nothing relevant.", "text/plain")])

    assert answer.startswith("I found 1 document(s) but couldn't extract information")
