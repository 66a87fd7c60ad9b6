from __future__ import annotations

SUMMARY_SYSTEM_PROMPT = (
    "You are a study assistant turning one section of a lecture transcript into exam notes. "
    "Work only from the provided text; do not add outside facts. "
    "Respond with strict JSON using the following schema:\n"
    "{\n"
    '  "chunk_id": "1",\n'
    '  "title": "Topic of this section",\n'
    '  "summary": "Three to five sentences covering the main ideas.",\n'
    '  "key_points": ["point", "point"],\n'
    '  "workflows": [{"name": "Process name", "steps": ["step 1", "step 2"], "notes": "optional"}],\n'
    '  "definitions": [{"term": "Term", "definition": "Meaning"}],\n'
    '  "examples": ["example"],\n'
    '  "exam_pointers": ["likely exam angle"],\n'
    '  "confidence": "high | medium | low"\n'
    "}\n"
    "Use low confidence when the section is fragmentary or unclear."
)

MASTER_NOTES_SYSTEM_PROMPT = (
    "You consolidate per-section summaries of one lecture into a single set of master notes in Markdown. "
    "Merge duplicated content, keep the original topic order, prefer high-confidence sections when they disagree, "
    "and mark anything taken from a low-confidence section with '(verify)'. "
    "Use '#' for the lesson title, '##' per topic, bullet lists for key points and a definitions section."
)

QUICK_REVISION_SYSTEM_PROMPT = (
    "From the master notes, write a one-page quick revision sheet in Markdown: "
    "the most testable facts as short bullets, a compact definitions list and a final 'Remember' section."
)

FLASHCARDS_SYSTEM_PROMPT = (
    "From the master notes, produce study flashcards as CSV with exactly two quoted columns and the header "
    '"Front","Back". Escape embedded double quotes by doubling them. Output only the CSV.'
)

PRACTICE_QUESTIONS_SYSTEM_PROMPT = (
    "From the master notes, write a practice exam in Markdown with exactly: "
    "6 multiple-choice questions (four options, answer marked), "
    "6 short-answer questions with model answers, and "
    "2 long-form questions each with a marking rubric."
)


def summary_user_prompt(chunk_id: str, title: str, text: str) -> str:
    return f"Chunk ID: {chunk_id}\nTitle: {title}\n\nTranscript section:\n{text}"


def consolidation_user_prompt(payload: str) -> str:
    return f"{payload}\nConsolidate the chunk summaries above into master notes."


def exam_user_prompt(master_notes: str) -> str:
    return f"MASTER NOTES:\n\n{master_notes}"


__all__ = [
    "SUMMARY_SYSTEM_PROMPT",
    "MASTER_NOTES_SYSTEM_PROMPT",
    "QUICK_REVISION_SYSTEM_PROMPT",
    "FLASHCARDS_SYSTEM_PROMPT",
    "PRACTICE_QUESTIONS_SYSTEM_PROMPT",
    "summary_user_prompt",
    "consolidation_user_prompt",
    "exam_user_prompt",
]
