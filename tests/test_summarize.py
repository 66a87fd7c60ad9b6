import json
import pathlib
import sys

import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from exam_pipeline.utils.types import TextChunk
from exam_pipeline.workflow.summarize import ChunkSummarizer, summary_statistics
from exam_pipeline.workflow.utils.summary_models import ChunkSummary, Confidence


class ReplyGateway:
    is_active = True

    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    def generate(self, system_prompt, user_prompt):
        self.prompts.append(user_prompt)
        return self.reply


def _chunk(chunk_id="4", words=80):
    text = " ".join(f"w{i}" for i in range(words))
    return TextChunk(chunk_id=chunk_id, title="Osmosis", text=text, source_file="bio.txt")


def test_valid_reply_becomes_summary():
    reply = json.dumps(
        {
            "chunk_id": "99",
            "title": "",
            "summary": "Water moves across membranes.",
            "key_points": ["down the gradient", "  "],
            "definitions": [{"term": "Osmosis", "definition": "Diffusion of water"}],
            "confidence": "HIGH",
        }
    )
    gateway = ReplyGateway(reply)

    result = ChunkSummarizer(gateway).summarize_chunk(_chunk())

    assert not result.degraded
    assert result.output.chunk_id == "4"
    assert result.output.title == "Osmosis"
    assert result.output.key_points == ["down the gradient"]
    assert result.output.confidence == Confidence.HIGH
    assert gateway.prompts[0].startswith("Chunk ID: 4\nTitle: Osmosis")


@pytest.mark.parametrize(
    "reply,title,confidence",
    [
        ('{"summary": "s", "confidence": 0.9}', "Osmosis", Confidence.MEDIUM),
        ('{"summary": "s", "confidence": null}', "Osmosis", Confidence.MEDIUM),
        ('{"summary": "s", "title": 5, "confidence": "low"}', "5", Confidence.LOW),
    ],
)
def test_odd_field_types_are_coerced(reply, title, confidence):
    result = ChunkSummarizer(ReplyGateway(reply)).summarize_chunk(_chunk())

    assert not result.degraded
    assert result.output.title == title
    assert result.output.confidence == confidence


@pytest.mark.parametrize(
    "reply", ["no json here", '{"title": "missing summary"}', '["a", "list"]', '{"summary": ["a"]}']
)
def test_unusable_reply_gives_low_confidence_excerpt(reply):
    result = ChunkSummarizer(ReplyGateway(reply), fallback_words=10).summarize_chunk(_chunk())

    assert result.degraded
    assert result.output.confidence == Confidence.LOW
    assert result.output.summary == "w0 w1 w2 w3 w4 w5 w6 w7 w8 w9..."


def test_fallback_excerpt_skips_overlap_and_keeps_short_text():
    chunk = TextChunk(chunk_id="2", title="Chunk 2", text="tail words own text", source_file="", overlap_chars=11)

    summary = ChunkSummarizer(None).fallback_summary(chunk)

    assert summary.summary == "own text"


def test_input_is_truncated_to_budget():
    gateway = ReplyGateway('{"summary": "ok"}')

    ChunkSummarizer(gateway, max_input_tokens=8).summarize_chunk(_chunk(words=500))

    assert gateway.prompts[0].endswith("w0 w1 w2 w3 w4 w5")


def test_summarize_chunks_reports_each_result_in_order():
    seen = []
    ChunkSummarizer(None).summarize_chunks([_chunk("1"), _chunk("2")], on_summary=lambda s, r: seen.append(s.chunk_id))

    assert seen == ["1", "2"]


def test_summary_statistics_counts_confidence():
    summaries = [
        ChunkSummary(chunk_id="1", summary="a", confidence="high"),
        ChunkSummary(chunk_id="2", summary="b", confidence="low"),
        ChunkSummary(chunk_id="3", summary="c", confidence="unexpected"),
    ]

    stats = summary_statistics(summaries)

    assert stats["total"] == 3
    assert (stats["high"], stats["medium"], stats["low"]) == (1, 1, 1)
    assert stats["low_confidence_ids"] == ["2"]
