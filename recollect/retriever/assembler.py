"""
Context Assembler

Selects ranked chunks into a token budget and renders the final
personal-context text.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from ..common.schemas import Chunk, Intent, estimate_tokens
from .searcher import ScoredChunk

logger = logging.getLogger("recollect.retriever.assembler")

PERSONAL_CONTEXT_HEADER = "Relevant notes from the user's personal memory:"
SECTION_SEPARATOR = "\n\n"


@dataclass
class AssembledContext:
    """Chunks selected for one query, in output order.

    total_tokens is the rendered cost of the chunks, separators included.
    """
    chunks: List[Chunk] = field(default_factory=list)
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.chunks


class ContextAssembler:
    """Budgeted chunk selection."""

    def assemble(self, ranked: List[ScoredChunk], intent: Intent, token_budget: int) -> AssembledContext:
        """
        Select chunks in ranked order until the budget would be exceeded.

        Selection stops at the first chunk that does not fit; smaller chunks
        further down the list are not considered.

        For NARRATIVE queries the selected chunks are re-ordered by
        sequence_index (ascending). Chunks without a sequence_index follow,
        in relevance order.
        """
        context = AssembledContext()
        if token_budget <= 0:
            return context

        for match in ranked:
            tokens = rendered_tokens(match.chunk)
            if context.total_tokens + tokens > token_budget:
                logger.debug(
                    "Budget reached at chunk %s (%d + %d > %d)",
                    match.chunk.id,
                    context.total_tokens,
                    tokens,
                    token_budget,
                )
                break
            context.chunks.append(match.chunk)
            context.total_tokens += tokens

        if intent == Intent.NARRATIVE and context.chunks:
            sequenced = sorted(
                (c for c in context.chunks if c.sequence_index is not None),
                key=lambda c: c.sequence_index,
            )
            unsequenced = [c for c in context.chunks if c.sequence_index is None]
            context.chunks = sequenced + unsequenced

        return context


def render_context(context: AssembledContext, entity_facts_block: str = "") -> str:
    """
    Render entity facts followed by the selected chunks.

    Returns:
        Prompt-insertable text, or "" when there is nothing to show
    """
    sections = []
    if entity_facts_block:
        sections.append(entity_facts_block)
    if context.chunks:
        lines = [PERSONAL_CONTEXT_HEADER]
        lines.extend(chunk.text.strip() for chunk in context.chunks)
        sections.append(SECTION_SEPARATOR.join(lines))
    return SECTION_SEPARATOR.join(sections)


def rendered_tokens(chunk: Chunk) -> int:
    """Tokens a chunk adds to the rendered context, including its separator."""
    return estimate_tokens(SECTION_SEPARATOR + chunk.text.strip())


def remaining_budget(token_budget: int, entity_facts_block: str) -> int:
    """Budget left for chunks once the facts block and header are accounted for."""
    prefix = PERSONAL_CONTEXT_HEADER
    if entity_facts_block:
        prefix = entity_facts_block + SECTION_SEPARATOR + PERSONAL_CONTEXT_HEADER
    return max(0, token_budget - estimate_tokens(prefix))
