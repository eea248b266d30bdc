"""Context assembler: token budget, citations and the generation prompt.

Pipeline:
  1. Keep retrieved hits best-first until ``token_budget`` tokens are used.
  2. Build one citation per kept hit (sender, subject, date, snippet).
  3. Render a numbered-sources prompt for the generation step.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from threadrag.rag.llm_client import count_tokens
from threadrag.rag.retriever import ChunkHit

_SNIPPET_CHARS = 240


@dataclass
class Citation:
    """Display data for one numbered source."""

    index: int
    chunk_key: str
    thread_key: str
    message_key: str
    chunk_index: int
    sender: str | None = None
    subject: str | None = None
    timestamp: str | None = None  # parsed ISO value, else the raw original string
    snippet: str = ""
    score: float = 0.0


@dataclass
class AssembledContext:
    hits: list[ChunkHit] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    total_tokens: int = 0


def assemble(hits: list[ChunkHit], model: str, token_budget: int) -> AssembledContext:
    """Apply the token budget to *hits* (already best-first) and build citations."""
    if not hits:
        return AssembledContext()
    selected, total_tokens = _apply_token_budget(hits, model, token_budget)
    citations = [_citation(i, hit) for i, hit in enumerate(selected, start=1)]
    return AssembledContext(hits=selected, citations=citations, total_tokens=total_tokens)


# ------------------------------------------------------------------
# Prompt
# ------------------------------------------------------------------

_SYSTEM_PROMPT = (
    "You answer questions about a corpus of email threads. Use only the numbered "
    "sources below. Cite sources inline as [n]. If the sources do not contain the "
    "answer, say so plainly."
)


def build_messages(question: str, context: AssembledContext) -> list[dict]:
    """OpenAI-style message list: system instructions + numbered sources + question."""
    if context.hits:
        blocks = []
        for citation, hit in zip(context.citations, context.hits):
            header = " | ".join(
                part
                for part in (
                    f"From: {citation.sender}" if citation.sender else "",
                    f"Subject: {citation.subject}" if citation.subject else "",
                    f"Date: {citation.timestamp}" if citation.timestamp else "",
                )
                if part
            )
            label = f"[{citation.index}] {header}".rstrip()
            blocks.append(f"{label}\n{hit.text}".rstrip())
        sources = "\n\n".join(blocks)
    else:
        sources = "(no sources found)"
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": f"Sources:\n\n{sources}\n\nQuestion: {question}"},
    ]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _citation(index: int, hit: ChunkHit) -> Citation:
    meta = hit.metadata or {}
    snippet = " ".join(hit.text.split())
    if len(snippet) > _SNIPPET_CHARS:
        snippet = snippet[: _SNIPPET_CHARS - 1].rstrip() + "…"
    return Citation(
        index=index,
        chunk_key=hit.chunk_key,
        thread_key=hit.thread_key,
        message_key=hit.message_key,
        chunk_index=hit.chunk_index,
        sender=meta.get("sender"),
        subject=meta.get("subject"),
        timestamp=meta.get("timestamp") or meta.get("timestamp_raw"),
        snippet=snippet,
        score=hit.score,
    )


def _apply_token_budget(
    hits: list[ChunkHit],
    model: str,
    budget: int,
) -> tuple[list[ChunkHit], int]:
    """Select hits that fit within *budget* tokens. Returns (selected, total_tokens)."""
    selected: list[ChunkHit] = []
    total = 0
    for hit in hits:
        tokens = count_tokens(model, hit.text)
        if total + tokens > budget:
            break
        selected.append(hit)
        total += tokens
    return selected, total
