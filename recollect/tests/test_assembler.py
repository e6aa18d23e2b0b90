"""Tests for budgeted context assembly and rendering."""

import pytest

from recollect.common.schemas import Chunk, Intent, MatchSource, estimate_tokens
from recollect.retriever.assembler import (
    PERSONAL_CONTEXT_HEADER,
    AssembledContext,
    ContextAssembler,
    remaining_budget,
    render_context,
)
from recollect.retriever.searcher import ScoredChunk


def _ranked(chunk_id, chars, sequence_index=None, score=1.0):
    chunk = Chunk(id=chunk_id, text="x" * chars, sequence_index=sequence_index)
    return ScoredChunk(chunk=chunk, score=score, source=MatchSource.SEMANTIC)


@pytest.fixture
def assembler():
    return ContextAssembler()


class TestAssemble:
    def test_fits_within_budget(self, assembler):
        ranked = [_ranked("a", 40), _ranked("b", 40), _ranked("c", 40)]

        context = assembler.assemble(ranked, Intent.FACTUAL, token_budget=25)

        # 40 characters plus the separator: 11 tokens each
        assert [c.id for c in context.chunks] == ["a", "b"]
        assert context.total_tokens == 22

    def test_stops_at_first_overflow(self, assembler):
        # 11, 31, then 6 tokens: the small third chunk is not considered
        ranked = [_ranked("a", 40), _ranked("b", 120), _ranked("c", 20)]

        context = assembler.assemble(ranked, Intent.FACTUAL, token_budget=20)

        assert [c.id for c in context.chunks] == ["a"]
        assert context.total_tokens == 11

    def test_token_estimate_rounds_up(self, assembler):
        context = assembler.assemble([_ranked("a", 41)], Intent.FACTUAL, token_budget=100)

        assert context.total_tokens == 11

    @pytest.mark.parametrize("budget", [0, 1, 7, 33, 4000])
    def test_never_exceeds_budget(self, assembler, budget):
        ranked = [_ranked(str(i), 13 * (i + 1)) for i in range(12)]

        context = assembler.assemble(ranked, Intent.CONCEPTUAL, token_budget=budget)

        assert context.total_tokens <= budget

    def test_narrative_sorted_by_sequence(self, assembler):
        ranked = [
            _ranked("late", 8, sequence_index=3),
            _ranked("loose", 8),
            _ranked("early", 8, sequence_index=1),
        ]

        context = assembler.assemble(ranked, Intent.NARRATIVE, token_budget=100)

        assert [c.id for c in context.chunks] == ["early", "late", "loose"]

    def test_other_intents_keep_relevance_order(self, assembler):
        ranked = [
            _ranked("late", 8, sequence_index=3),
            _ranked("early", 8, sequence_index=1),
        ]

        context = assembler.assemble(ranked, Intent.FACTUAL, token_budget=100)

        assert [c.id for c in context.chunks] == ["late", "early"]


class TestRender:
    def test_empty(self):
        assert render_context(AssembledContext(), "") == ""

    def test_facts_come_first(self):
        context = AssembledContext(chunks=[Chunk(id="a", text="Lilou naps a lot.")], total_tokens=5)

        text = render_context(context, "Known facts:\n- Lilou: a cat")

        assert text.index("Known facts") < text.index(PERSONAL_CONTEXT_HEADER)
        assert text.endswith("Lilou naps a lot.")

    def test_facts_only(self):
        assert render_context(AssembledContext(), "Known facts") == "Known facts"

    def test_remaining_budget(self):
        # header is 47 characters; with facts it is preceded by facts + separator
        assert remaining_budget(4000, "") == 3988
        assert remaining_budget(4000, "x" * 400) == 3887
        assert remaining_budget(5, "x" * 400) == 0

    @pytest.mark.parametrize("budget", [13, 32, 40, 57, 120])
    @pytest.mark.parametrize("facts", ["", "Known facts:\n- Lilou: a tabby cat"])
    def test_rendered_text_stays_within_budget(self, assembler, budget, facts):
        ranked = [_ranked("a", 40), _ranked("b", 40), _ranked("c", 17), _ranked("d", 3)]

        context = assembler.assemble(ranked, Intent.FACTUAL, remaining_budget(budget, facts))
        text = render_context(context, facts)

        assert estimate_tokens(text) <= budget

    def test_separators_are_counted(self, assembler):
        ranked = [_ranked("a", 40), _ranked("b", 40)]

        context = assembler.assemble(ranked, Intent.FACTUAL, remaining_budget(32, ""))

        assert [c.id for c in context.chunks] == ["a"]
        assert estimate_tokens(render_context(context)) <= 32
