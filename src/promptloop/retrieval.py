"""Retrieval-augmented context for test inputs.

Indexing: document -> overlapping chunks -> embeddings -> ``KnowledgeIndex``.
Retrieval: query -> embedding -> cosine ranking -> formatted context.

Example:
    store = KnowledgeStore()
    store.add(KnowledgeBase(id="kb1", name="Docs", files=[...]))
    await store.index("kb1", embedder, ModelRef.model_validate("openai:text-embedding-3-small"))

    rag = await get_rag_context("How do refunds work?", store.resolve(["kb1"]), embedder, model)
    user_message = format_rag_message(rag.context, len(rag.chunks), "How do refunds work?")
"""

import time
from typing import Iterable, Sequence

import logfire

from . import config
from .cancellation import CancellationToken, guarded
from .capabilities import Embedder
from .models import (
    Chunk,
    KnowledgeBase,
    KnowledgeFile,
    KnowledgeIndex,
    ModelRef,
    RagContext,
    RetrievedChunk,
    Source,
)
from .scoring import cosine_similarity


def _find_break(text: str, start: int, end: int, size: int, separators: Sequence[str]) -> int:
    search_start = start + size // 2
    window = text[search_start:end]
    for separator in separators:
        idx = window.rfind(separator)
        if idx != -1:
            return search_start + idx + len(separator)
    return -1


def chunk_text(
    text: str,
    *,
    chunk_size: int = config.CHUNK_SIZE,
    overlap: int = config.CHUNK_OVERLAP,
    separators: Sequence[str] = config.CHUNK_SEPARATORS,
) -> list[Chunk]:
    """Split ``text`` into overlapping windows of at most ``chunk_size`` characters.

    A window prefers to end right after a separator found in its second half,
    trying separators in order (paragraph, line, sentence, word). The next
    window starts ``overlap`` characters before the previous end, and always
    moves forward.

    ``start``/``end`` are offsets into the original text; ``text`` is trimmed.
    """
    if not text:
        return []
    if len(text) <= chunk_size:
        return [Chunk(text=text.strip(), index=0, start=0, end=len(text))]

    chunks: list[Chunk] = []
    position = 0
    while position < len(text):
        end = min(position + chunk_size, len(text))
        if end < len(text):
            best_break = _find_break(text, position, end, chunk_size, separators)
            if best_break > position:
                end = best_break

        piece = text[position:end].strip()
        if piece:
            chunks.append(Chunk(text=piece, index=len(chunks), start=position, end=end))
        elif end >= len(text) and chunks:
            # trailing whitespace belongs to the last chunk
            chunks[-1] = chunks[-1].model_copy(update={"end": end})

        if end >= len(text):
            break

        next_position = end - overlap
        position = next_position if next_position > position else end

    return chunks


def chunk_document(file: KnowledgeFile, **chunk_options) -> list[Chunk]:
    return [
        chunk.model_copy(update={"file_id": file.id, "file_name": file.name})
        for chunk in chunk_text(file.content, **chunk_options)
    ]


def chunk_knowledge_base(knowledge_base: KnowledgeBase, **chunk_options) -> list[Chunk]:
    chunks: list[Chunk] = []
    for file in knowledge_base.files:
        chunks.extend(chunk_document(file, **chunk_options))
    return chunks


async def generate_embeddings(
    texts: list[str],
    embedder: Embedder,
    model: ModelRef,
    *,
    batch_size: int = config.EMBEDDING_BATCH_SIZE,
    token: CancellationToken | None = None,
) -> list[list[float]]:
    """Embed ``texts`` in batches, preserving order."""
    embeddings: list[list[float]] = []
    for offset in range(0, len(texts), batch_size):
        batch = texts[offset : offset + batch_size]
        vectors = await guarded(token, embedder.embed(batch, model))
        if len(vectors) != len(batch):
            raise ValueError(
                f"Embedder returned {len(vectors)} vectors for a batch of {len(batch)} texts"
            )
        embeddings.extend(vectors)
    return embeddings


async def index_knowledge_base(
    knowledge_base: KnowledgeBase,
    embedder: Embedder,
    model: ModelRef,
    *,
    token: CancellationToken | None = None,
    **chunk_options,
) -> KnowledgeIndex:
    with logfire.span("Indexing knowledge base", knowledge_base=knowledge_base.name):
        chunks = chunk_knowledge_base(knowledge_base, **chunk_options)
        embeddings = await generate_embeddings(
            [c.text for c in chunks], embedder, model, token=token
        )
        logfire.info("Knowledge base indexed", chunks=len(chunks), model=model.name)
        return KnowledgeIndex(
            chunks=chunks, embeddings=embeddings, model=model.name, indexed_at=time.time()
        )


def is_indexed(knowledge_base: KnowledgeBase) -> bool:
    index = knowledge_base.index
    return bool(index and index.chunks and index.embeddings)


def calculate_similarities(
    query_embedding: Sequence[float], embeddings: Iterable[Sequence[float]]
) -> list[tuple[int, float]]:
    """Return ``(chunk index, similarity)`` pairs, most similar first."""
    scored = [(i, cosine_similarity(query_embedding, e)) for i, e in enumerate(embeddings)]
    return sorted(scored, key=lambda pair: pair[1], reverse=True)


def _rank(
    knowledge_base: KnowledgeBase, query_embedding: Sequence[float], min_similarity: float
) -> list[RetrievedChunk]:
    index = knowledge_base.index
    if index is None:
        return []
    return [
        RetrievedChunk(
            **index.chunks[i].model_dump(),
            similarity=similarity,
            knowledge_base_id=knowledge_base.id,
            knowledge_base_name=knowledge_base.name,
        )
        for i, similarity in calculate_similarities(query_embedding, index.embeddings)
        if similarity >= min_similarity
    ]


async def _embed_query(
    query: str, embedder: Embedder, model: ModelRef, token: CancellationToken | None
) -> list[float] | None:
    vectors = await generate_embeddings([query], embedder, model, token=token)
    return vectors[0] if vectors and vectors[0] else None


async def retrieve_from_knowledge_base(
    query: str,
    knowledge_base: KnowledgeBase,
    embedder: Embedder,
    model: ModelRef,
    *,
    top_k: int = config.RAG_TOP_K,
    min_similarity: float = 0.5,
    token: CancellationToken | None = None,
) -> list[RetrievedChunk]:
    if not is_indexed(knowledge_base):
        logfire.warn("Knowledge base is not indexed", knowledge_base=knowledge_base.name)
        return []
    query_embedding = await _embed_query(query, embedder, model, token)
    if query_embedding is None:
        logfire.error("Failed to generate query embedding")
        return []
    return _rank(knowledge_base, query_embedding, min_similarity)[:top_k]


async def retrieve_context(
    query: str,
    knowledge_bases: Sequence[KnowledgeBase],
    embedder: Embedder,
    model: ModelRef,
    *,
    top_k: int = config.RAG_TOP_K,
    min_similarity: float = 0.5,
    token: CancellationToken | None = None,
) -> list[RetrievedChunk]:
    """Search several knowledge bases with a single query embedding.

    Results from all bases are merged, re-ranked and cut to ``top_k``.
    Unindexed bases are skipped.
    """
    if not knowledge_bases:
        return []
    query_embedding = await _embed_query(query, embedder, model, token)
    if query_embedding is None:
        logfire.error("Failed to generate query embedding")
        return []

    results: list[RetrievedChunk] = []
    for kb in knowledge_bases:
        if not is_indexed(kb):
            logfire.warn("Skipping unindexed knowledge base", knowledge_base=kb.name)
            continue
        results.extend(_rank(kb, query_embedding, min_similarity))

    results.sort(key=lambda c: c.similarity, reverse=True)
    return results[:top_k]


def format_context(
    chunks: Sequence[RetrievedChunk],
    *,
    include_source: bool = True,
    include_score: bool = False,
    max_length: int = config.RAG_CONTEXT_MAX_LENGTH,
) -> str:
    """Render chunks as citation-headed blocks, capped at ``max_length`` characters.

    A block that does not fit is cut and suffixed with ``...`` when more than
    100 characters of room are left; otherwise it is dropped.
    """
    parts: list[str] = []
    length = 0
    for chunk in chunks:
        header = ""
        if include_source:
            header = f"[Source: {chunk.file_name}"
            if chunk.knowledge_base_name:
                header += f" | KB: {chunk.knowledge_base_name}"
            if include_score:
                header += f" | Score: {chunk.similarity:.3f}"
            header += "]\n"

        block = f"{header}{chunk.text}\n\n"
        if length + len(block) > max_length:
            remaining = max_length - length
            if remaining > 100:
                parts.append(block[:remaining] + "...")
            break
        parts.append(block)
        length += len(block)

    return "".join(parts).strip()


async def get_rag_context(
    query: str,
    knowledge_bases: Sequence[KnowledgeBase],
    embedder: Embedder,
    model: ModelRef,
    *,
    top_k: int = config.RAG_TOP_K,
    min_similarity: float = 0.5,
    include_source: bool = True,
    include_score: bool = False,
    max_length: int = config.RAG_CONTEXT_MAX_LENGTH,
    token: CancellationToken | None = None,
) -> RagContext:
    chunks = await retrieve_context(
        query,
        knowledge_bases,
        embedder,
        model,
        top_k=top_k,
        min_similarity=min_similarity,
        token=token,
    )
    context = format_context(
        chunks, include_source=include_source, include_score=include_score, max_length=max_length
    )

    sources: dict[tuple[str | None, str | None], Source] = {}
    for chunk in chunks:
        sources[(chunk.knowledge_base_id, chunk.file_id)] = Source(
            knowledge_base_id=chunk.knowledge_base_id,
            knowledge_base_name=chunk.knowledge_base_name,
            file_id=chunk.file_id,
            file_name=chunk.file_name,
        )
    return RagContext(context=context, sources=list(sources.values()), chunks=chunks)


def format_rag_message(context: str, results_count: int, query: str) -> str:
    return (
        f"[Context from knowledge bases ({results_count} results)]\n{context}\n\n"
        f"[User Query]\n{query}"
    )


class KnowledgeStore:
    """In-memory registry of knowledge bases, addressed by id or name."""

    def __init__(self, knowledge_bases: Iterable[KnowledgeBase] = ()):
        self._bases: dict[str, KnowledgeBase] = {}
        for kb in knowledge_bases:
            self.add(kb)

    def __len__(self) -> int:
        return len(self._bases)

    def __contains__(self, ref: str) -> bool:
        return self.get(ref) is not None

    def add(self, knowledge_base: KnowledgeBase) -> None:
        self._bases[knowledge_base.id] = knowledge_base

    def remove(self, ref: str) -> None:
        kb = self.get(ref)
        if kb is not None:
            del self._bases[kb.id]

    def get(self, ref: str) -> KnowledgeBase | None:
        if ref in self._bases:
            return self._bases[ref]
        return next((kb for kb in self._bases.values() if kb.name == ref), None)

    def resolve(self, refs: Iterable[str]) -> list[KnowledgeBase]:
        found = []
        for ref in refs:
            kb = self.get(ref)
            if kb is None:
                logfire.warn("Unknown knowledge base", knowledge_base=ref)
                continue
            found.append(kb)
        return found

    async def index(
        self,
        ref: str,
        embedder: Embedder,
        model: ModelRef,
        *,
        token: CancellationToken | None = None,
        **chunk_options,
    ) -> KnowledgeIndex:
        kb = self.get(ref)
        if kb is None:
            raise KeyError(f"Knowledge base '{ref}' not found")
        index = await index_knowledge_base(kb, embedder, model, token=token, **chunk_options)
        kb.index = index
        return index

    async def index_all(
        self,
        embedder: Embedder,
        model: ModelRef,
        *,
        token: CancellationToken | None = None,
    ) -> None:
        for kb in self._bases.values():
            if not is_indexed(kb):
                await self.index(kb.id, embedder, model, token=token)
