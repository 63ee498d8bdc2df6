from __future__ import annotations

import pytest

from raindrop_notebook.text_extractor import extract, extract_page, normalize_text, split_sentences, summarize

from conftest import ARTICLE_HTML, make_bookmark, success


def test_extract_strips_markup_and_scripts():
    result = extract(ARTICLE_HTML, "text/html; charset=utf-8")

    assert "The first paragraph explains what happened" in result.body_text
    assert "console.log" not in result.body_text
    assert "<p>" not in result.body_text
    assert result.summary
    assert len(result.summary) <= 600


def test_extract_is_deterministic():
    assert extract(ARTICLE_HTML, "text/html") == extract(ARTICLE_HTML, "text/html")


def test_extract_non_text_content_yields_empty_body():
    result = extract(b"%PDF-1.7\x00\x01\x02binary", "application/pdf")
    assert result.body_text == ""
    assert result.summary == ""


def test_extract_empty_bytes_yields_empty_body():
    result = extract(b"", "text/html")
    assert result.body_text == ""
    assert result.summary == ""


def test_extract_unparseable_markup_does_not_raise():
    result = extract(b"<<<>>> <html", "text/html")
    assert isinstance(result.body_text, str)


def test_extract_plain_text_is_normalized():
    raw = "First  line.\r\n\r\n\r\n   Second\tline!  ".encode("utf-8")
    result = extract(raw, "text/plain; charset=utf-8")
    assert result.body_text == "First line.\nSecond line!"
    assert result.summary == "First line. Second line!"


def test_extract_sniffs_html_without_content_type():
    result = extract(ARTICLE_HTML, None)
    assert "console.log" not in result.body_text
    assert "second paragraph" in result.body_text


def test_normalize_text_collapses_whitespace():
    assert normalize_text("  a   b \n\n\n c  ") == "a b\nc"


def test_split_sentences_handles_latin_and_japanese():
    assert split_sentences("One. Two? Three!") == ["One.", "Two?", "Three!"]
    assert split_sentences("今日は晴れ。明日は雨。") == ["今日は晴れ。", "明日は雨。"]
    assert split_sentences('He said "stop." Then left.') == ['He said "stop."', "Then left."]


def test_summarize_keeps_whole_sentences_within_limit():
    text = "Alpha beta gamma. Delta epsilon zeta. Eta theta iota."
    summary = summarize(text, 40)
    assert summary == "Alpha beta gamma. Delta epsilon zeta."
    assert len(summary) <= 40


@pytest.mark.parametrize("limit", [1, 5, 17, 18, 30, 55, 200])
def test_summarize_never_exceeds_limit_and_never_splits_a_terminator(limit: int):
    text = "Alpha beta gamma. Delta epsilon zeta! Eta theta iota?"
    summary = summarize(text, limit)
    assert len(summary) <= limit
    sentences = split_sentences(text)
    # either a run of whole sentences or a prefix of the first one
    if summary.endswith((".", "!", "?")):
        assert summary in {" ".join(sentences[:n]) for n in range(1, len(sentences) + 1)}
    else:
        assert sentences[0].startswith(summary)


def test_summarize_cuts_long_first_sentence_on_word_boundary():
    text = "This opening sentence is much too long for the configured summary limit."
    summary = summarize(text, 25)
    assert summary == "This opening sentence is"


def test_summarize_hard_cuts_text_without_spaces():
    text = "あ" * 50 + "。"
    summary = summarize(text, 10)
    assert summary == "あ" * 10


def test_summarize_empty_text():
    assert summarize("", 10) == ""


def test_extract_page_uses_bookmark_metadata():
    bookmark = make_bookmark(3)
    page = extract_page(success(bookmark), max_summary_chars=100)

    assert page.url == bookmark.url
    assert page.title == "Article 3"
    assert page.saved_at == bookmark.saved_at
    assert len(page.summary) <= 100
