"""Sentence-aware text chunking for the ingestion pipeline."""

import math
import re
from dataclasses import dataclass

from pydantic import BaseModel, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import ChunkingStats, TextChunk

# Approximate tokens per whitespace-delimited word
TOKENS_PER_WORD = 0.75

# Terminal punctuation followed by whitespace ends a sentence
_SENTENCE_BOUNDARY = re.compile(r"([.!?]+)\s+")


class ChunkingOptions(BaseModel):
    """Chunk sizing, all values in approximate tokens."""

    chunk_size: int = 512
    overlap_size: int = 64
    min_chunk_size: int = 128
    max_chunk_size: int = 1024
    merge_short_tail: bool = True

    @model_validator(mode="after")
    def check_sizes(self) -> "ChunkingOptions":
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.overlap_size < 0:
            raise ValueError("overlap_size must be non-negative")
        if self.overlap_size >= self.chunk_size:
            raise ValueError("overlap_size must be less than chunk_size")
        if self.min_chunk_size < 0:
            raise ValueError("min_chunk_size must be non-negative")
        if self.min_chunk_size > self.chunk_size:
            raise ValueError("min_chunk_size must not exceed chunk_size")
        if self.chunk_size > self.max_chunk_size:
            raise ValueError("chunk_size must not exceed max_chunk_size")
        return self


def resolve_options(options: ChunkingOptions | None = None, **overrides) -> ChunkingOptions:
    """Merge overrides onto options (or the defaults) and validate the result.

    Raises:
        ValidationError: If the merged options are inconsistent.
    """
    base = options.model_dump() if options else {}
    try:
        return ChunkingOptions(**{**base, **overrides})
    except PydanticValidationError as e:
        message = "; ".join(err["msg"] for err in e.errors())
        raise ValidationError(f"invalid chunking options: {message}") from e


@dataclass(frozen=True)
class _Sentence:
    text: str
    start: int
    end: int
    tokens: int


def count_tokens(text: str) -> int:
    """Approximate token count: ceil(words * 0.75)."""
    return math.ceil(len(text.split()) * TOKENS_PER_WORD)


def _append_sentence(text: str, start: int, end: int, sentences: list[_Sentence]) -> None:
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return
    offset = start + len(segment) - len(segment.lstrip())
    sentences.append(
        _Sentence(
            text=stripped,
            start=offset,
            end=offset + len(stripped),
            tokens=count_tokens(stripped),
        )
    )


def _split_sentences(text: str) -> list[_Sentence]:
    sentences: list[_Sentence] = []
    start = 0
    for match in _SENTENCE_BOUNDARY.finditer(text):
        _append_sentence(text, start, match.end(1), sentences)
        start = match.end()
    _append_sentence(text, start, len(text), sentences)
    return sentences


def split_into_sentences(text: str) -> list[str]:
    """Split text at terminal punctuation followed by whitespace.

    Text without any terminal punctuation comes back as a single sentence.
    """
    return [s.text for s in _split_sentences(text)]


def _build_chunk(sentences: list[_Sentence], source: str, index: int) -> TextChunk:
    start = sentences[0].start
    end = sentences[-1].end
    content = source[start:end]
    return TextChunk(
        text=content,
        start_position=start,
        end_position=end,
        token_count=count_tokens(content),
        sentences=[s.text for s in sentences],
        chunk_index=index,
    )


def _extend_chunk(chunk: TextChunk, sentences: list[_Sentence], source: str) -> TextChunk:
    end = sentences[-1].end
    content = source[chunk.start_position:end]
    return chunk.model_copy(
        update={
            "text": content,
            "end_position": end,
            "token_count": count_tokens(content),
            "sentences": chunk.sentences + [s.text for s in sentences],
        }
    )


def _overlap(sentences: list[_Sentence], overlap_size: int) -> list[_Sentence]:
    """Trailing sentences whose token total does not exceed overlap_size."""
    overlap: list[_Sentence] = []
    tokens = 0
    for sentence in reversed(sentences):
        if tokens + sentence.tokens > overlap_size:
            break
        overlap.insert(0, sentence)
        tokens += sentence.tokens
    return overlap


class DocumentChunker:
    """Splits document text into overlapping, size-bounded chunks.

    Sentences are accumulated into a buffer until it reaches ``chunk_size``
    tokens (and at least ``min_chunk_size``), or until the next sentence would
    push it past ``max_chunk_size``. Each new buffer starts with the trailing
    sentences of the previous chunk, up to ``overlap_size`` tokens.

    Sentences are never split, so a single sentence longer than
    ``max_chunk_size`` becomes its own oversized chunk. The overlap is never
    trimmed either: when overlap plus the next sentence exceeds
    ``max_chunk_size``, that chunk is oversized in the same way.
    """

    def __init__(self, options: ChunkingOptions | None = None, **overrides):
        self.options = resolve_options(options, **overrides)

    def chunk(
        self, text: str, options: ChunkingOptions | None = None, **overrides
    ) -> list[TextChunk]:
        """Chunk text into an ordered list of TextChunk.

        Args:
            text: Source document text.
            options: Options replacing the chunker's defaults for this call.
            **overrides: Individual option overrides.

        Returns:
            Chunks with contiguous chunk_index values starting at 0.

        Raises:
            ValidationError: If the effective options are invalid.
        """
        config = resolve_options(options or self.options, **overrides)
        sentences = _split_sentences(text) if text else []
        if not sentences:
            return []

        chunks: list[TextChunk] = []
        buffer: list[_Sentence] = []
        buffer_tokens = 0
        fresh = 0  # sentences added since the last emitted chunk

        def flush() -> None:
            nonlocal buffer, buffer_tokens, fresh
            chunks.append(_build_chunk(buffer, text, len(chunks)))
            buffer = _overlap(buffer, config.overlap_size)
            buffer_tokens = sum(s.tokens for s in buffer)
            fresh = 0

        for sentence in sentences:
            if fresh and buffer_tokens + sentence.tokens > config.max_chunk_size:
                flush()

            buffer.append(sentence)
            buffer_tokens += sentence.tokens
            fresh += 1

            if buffer_tokens >= config.chunk_size and buffer_tokens >= config.min_chunk_size:
                flush()

        if fresh:
            self._handle_tail(chunks, buffer, buffer_tokens, fresh, text, config)

        return chunks

    @staticmethod
    def _handle_tail(
        chunks: list[TextChunk],
        buffer: list[_Sentence],
        buffer_tokens: int,
        fresh: int,
        source: str,
        config: ChunkingOptions,
    ) -> None:
        if buffer_tokens >= config.min_chunk_size:
            chunks.append(_build_chunk(buffer, source, len(chunks)))
            return

        if not config.merge_short_tail:
            # Legacy behaviour: short trailing content is dropped
            return

        if not chunks:
            chunks.append(_build_chunk(buffer, source, 0))
            return

        tail = buffer[-fresh:]
        last = chunks[-1]
        if last.token_count + sum(s.tokens for s in tail) <= config.max_chunk_size:
            chunks[-1] = _extend_chunk(last, tail, source)
        else:
            chunks.append(_build_chunk(buffer, source, len(chunks)))


def chunk_text(text: str, **options) -> list[TextChunk]:
    """Chunk text with default options, overridden by keyword arguments."""
    return DocumentChunker(**options).chunk(text)


def get_chunking_stats(chunks: list[TextChunk]) -> ChunkingStats:
    if not chunks:
        return ChunkingStats(
            total_chunks=0, average_chunk_size=0, total_tokens=0, min_tokens=0, max_tokens=0
        )

    token_counts = [c.token_count for c in chunks]
    total_tokens = sum(token_counts)
    return ChunkingStats(
        total_chunks=len(chunks),
        average_chunk_size=round(total_tokens / len(chunks)),
        total_tokens=total_tokens,
        min_tokens=min(token_counts),
        max_tokens=max(token_counts),
    )
