import pathlib
import sys

import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from exam_pipeline.errors import ConfigurationError
from exam_pipeline.workflow.chunking import (
    TextSegmenter,
    chunk_statistics,
    clean_text,
    estimate_tokens,
    truncate_to_token_budget,
)


def _lecture(paragraphs: int = 12, words: int = 40) -> str:
    parts = []
    for index in range(paragraphs):
        if index % 4 == 0:
            parts.append(f"# Topic {index // 4 + 1}")
        parts.append(" ".join(f"w{index}_{word}" for word in range(words)))
    return "\n\n".join(parts)


@pytest.mark.parametrize("target_size,overlap", [(50, 10), (120, 30), (400, 0), (30, 29), (1500, 200)])
def test_own_regions_reconstruct_document(target_size, overlap):
    document = _lecture()
    chunks = TextSegmenter(target_size, overlap).segment(document)

    assert "".join(chunk.text[chunk.overlap_chars:] for chunk in chunks) == document


@pytest.mark.parametrize("target_size,overlap", [(50, 10), (120, 30), (30, 29)])
def test_overlap_and_chunk_size_stay_bounded(target_size, overlap):
    chunks = TextSegmenter(target_size, overlap).segment(_lecture(paragraphs=20, words=55))

    assert len(chunks) > 1
    assert chunks[0].overlap_chars == 0
    for previous, chunk in zip(chunks, chunks[1:]):
        repeated = chunk.text[: chunk.overlap_chars]
        assert estimate_tokens(repeated) <= overlap
        assert previous.text.endswith(repeated)
    for chunk in chunks:
        assert estimate_tokens(chunk.own_text) <= target_size


def test_short_document_yields_single_chunk():
    document = "A short lecture about cells.\n\nCells divide by mitosis."
    chunks = TextSegmenter(100, 20).segment(document, source_file="bio.txt")

    assert len(chunks) == 1
    assert chunks[0].chunk_id == "1"
    assert chunks[0].text == document
    assert chunks[0].title == "Chunk 1"
    assert chunks[0].source_file == "bio.txt"


def test_empty_document_has_no_chunks():
    assert TextSegmenter(100, 10).segment("") == []


def test_chunk_ids_are_sequential():
    chunks = TextSegmenter(50, 10).segment(_lecture())

    assert [chunk.chunk_id for chunk in chunks] == [str(i) for i in range(1, len(chunks) + 1)]


def test_headings_start_new_chunks_and_name_them():
    document = "# Alpha\nintro text here\n\n# Beta\nmore text here\n\n# Gamma\nlast part"
    chunks = TextSegmenter(500, 10).segment(document)

    assert [chunk.title for chunk in chunks] == ["Alpha", "Beta", "Gamma"]
    assert chunks[1].own_text.startswith("# Beta")


def test_oversized_section_is_split_and_marked_continued():
    document = "# Gamma\n" + " ".join(f"token{i}" for i in range(100))
    chunks = TextSegmenter(20, 4).segment(document)

    assert len(chunks) > 1
    assert chunks[0].title == "Gamma"
    assert all(chunk.title == "Gamma (continued)" for chunk in chunks[1:])


def test_line_numbers_follow_own_region():
    chunks = TextSegmenter(500, 0).segment("# A\nx\n\n# B\ny")

    assert (chunks[0].start_line, chunks[0].end_line) == (1, 2)
    assert (chunks[1].start_line, chunks[1].end_line) == (4, 5)


@pytest.mark.parametrize("target_size,overlap", [(100, 100), (100, 150), (0, 0), (10, -1)])
def test_invalid_parameters_fail_fast(target_size, overlap):
    with pytest.raises(ConfigurationError):
        TextSegmenter(target_size, overlap)
    with pytest.raises(ConfigurationError):
        TextSegmenter(200, 10).segment("some text", target_size, overlap)


@pytest.mark.parametrize("text,expected", [("", 0), ("   \n", 0), ("a", 2), ("a b c", 4), ("a b c d e f", 8)])
def test_estimate_tokens(text, expected):
    assert estimate_tokens(text) == expected


@pytest.mark.parametrize("budget", [0, 1, 2, 5, 17, 64, 1000])
def test_truncation_is_idempotent(budget):
    text = _lecture(paragraphs=6, words=30)
    once = truncate_to_token_budget(text, budget)

    assert truncate_to_token_budget(once, budget) == once
    assert estimate_tokens(once) <= max(budget, 0)
    assert text.startswith(once)


def test_truncation_cuts_after_last_kept_word():
    assert truncate_to_token_budget("one two three four five", 4) == "one two three"
    assert truncate_to_token_budget("one two", 100) == "one two"


def test_clean_text_normalizes_whitespace_and_controls():
    assert clean_text("a\r\n\r\n\r\n\r\nb  \n\x07c  ") == "a\n\nb\nc"


def test_chunk_statistics():
    chunks = TextSegmenter(50, 10).segment(_lecture())
    stats = chunk_statistics(chunks)

    assert stats["count"] == len(chunks)
    assert stats["min_tokens"] <= stats["avg_tokens"] <= stats["max_tokens"]
    assert chunk_statistics([])["count"] == 0
