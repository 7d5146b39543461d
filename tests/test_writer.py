"""
Tests for the sequential article writer.
"""

import pytest

from blogsmith.models import GenerateOptions, ResearchBundle
from blogsmith.writer import (
    MAX_TOKENS_CONCLUSION,
    MAX_TOKENS_INTRO,
    MAX_TOKENS_SECTION,
    ArticleWriter,
    clean_unit_html,
    wrap_article,
)


def _unit_responses(outline):
    responses = ["<p>Intro words here.</p>"]
    responses += [
        f"<h2>{s.title}</h2><p>Body for {s.title} see https://source.example/{i}</p>"
        for i, s in enumerate(outline.sections)
    ]
    responses.append("```html\n<p>Wrap it up.</p>\n```")
    return responses


class TestHtmlHelpers:

    @pytest.mark.unit
    def test_clean_strips_fences(self):
        assert clean_unit_html("```html\n<p>x</p>\n```") == "<p>x</p>"

    @pytest.mark.unit
    def test_clean_demotes_h1(self):
        assert clean_unit_html('<h1 class="t">Title</h1>') == '<h2 class="t">Title</h2>'

    @pytest.mark.unit
    def test_wrap_has_single_h1(self):
        html = wrap_article("<p>body</p>", "My Title")
        assert html.startswith("<article>")
        assert html.count("<h1>") == 1
        assert '<div class="article-content">' in html


class TestArticleWriter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_units_in_order_with_progress(self, mock_ai, outline):
        mock_ai.generate_text.side_effect = _unit_responses(outline)
        seen = []

        writer = ArticleWriter(mock_ai, GenerateOptions(provider="gemini"))
        article = await writer.write_article(
            outline, ResearchBundle.empty("x"), on_progress=seen.append,
        )

        assert [p["section"] for p in seen] == [
            "Introduction", "Section 1", "Section 2", "Section 3", "Section 4", "Conclusion",
        ]
        assert seen[-1]["content"] == "<p>Wrap it up.</p>"
        assert mock_ai.generate_text.await_count == 6
        assert article.html.count("<h1>") == 1
        assert article.html.index("Intro words") < article.html.index("Section 1") < article.html.index("Wrap it up")
        assert article.sources == [f"https://source.example/{i}" for i in range(4)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_progress_callback_is_awaited(self, mock_ai, outline):
        mock_ai.generate_text.side_effect = _unit_responses(outline)
        seen = []

        async def on_progress(update):
            seen.append(update["section"])

        await ArticleWriter(mock_ai).write_article(outline, ResearchBundle.empty("x"), on_progress=on_progress)
        assert len(seen) == 6

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_caps_per_unit(self, mock_ai, outline):
        mock_ai.generate_text.side_effect = _unit_responses(outline)
        await ArticleWriter(mock_ai).write_article(outline, ResearchBundle.empty("x"))

        caps = [call.args[1].max_tokens for call in mock_ai.generate_text.await_args_list]
        assert caps == [MAX_TOKENS_INTRO] + [MAX_TOKENS_SECTION] * 4 + [MAX_TOKENS_CONCLUSION]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_section_prompt_carries_previous_content(self, mock_ai, outline):
        mock_ai.generate_text.side_effect = _unit_responses(outline)
        await ArticleWriter(mock_ai).write_article(outline, ResearchBundle.empty("x"), extra_context="Use metric units")

        second_prompt = mock_ai.generate_text.await_args_list[1].args[0][1]["content"]
        assert "Intro words here." in second_prompt
        assert "Use metric units" in second_prompt

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_word_count_excludes_wrapper_title(self, mock_ai, outline):
        mock_ai.generate_text.side_effect = ["<p>one two</p>", "", "", "", "", "<p>three</p>"]
        article = await ArticleWriter(mock_ai).write_article(outline, ResearchBundle.empty("x"))
        assert article.word_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unit_failure_aborts(self, mock_ai, outline):
        mock_ai.generate_text.side_effect = ["<p>intro</p>", RuntimeError("provider down")]
        with pytest.raises(RuntimeError):
            await ArticleWriter(mock_ai).write_article(outline, ResearchBundle.empty("x"))
