"""PRD chunking and token-budgeted context assembly."""

import re
from dataclasses import dataclass

from flow_memory._retrieval import ScoredItem
from flow_memory.errors import ChunkingError
from flow_memory.utils import CHARS_PER_TOKEN

MIN_CHUNK_LENGTH = 50
MAX_CHUNK_LENGTH = 500
SIMILARITY_BAND = 0.1

CONTEXT_HEADER = "## Relevant PRD Context\n\n"
NO_CONTEXT = "No PRD context available."

# Lower number wins when similarities are close
TYPE_PRIORITY = {
    "constraint": 0,
    "criteria": 1,
    "goal": 2,
    "description": 3,
    "list": 4,
}

SECTION_SPLIT = re.compile(r"^##\s+", re.MULTILINE)
PARAGRAPH_SPLIT = re.compile(r"\n\s*\n+")

LIST_PATTERN = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s", re.MULTILINE)
CRITERIA_PATTERN = re.compile(r"acceptance criteria|\bgiven\b.*\bwhen\b.*\bthen\b", re.IGNORECASE | re.DOTALL)
CONSTRAINT_PATTERN = re.compile(
    r"\bconstraints?\b|\bmust not\b|\bshall not\b|\brequired\b", re.IGNORECASE
)
GOAL_PATTERN = re.compile(r"\b(?:goals?|objectives?|purpose|aims?)\b", re.IGNORECASE)


@dataclass
class Chunk:
    """A typed slice of a PRD section."""

    section: str
    content: str
    chunk_type: str


@dataclass
class ContextResult:
    """Assembled PRD context for a task."""

    context: str
    top_relevance: int
    chunks_included: int


def detect_chunk_type(content: str) -> str:
    """Classify a chunk by the first matching pattern.

    Args:
        content: Chunk text.

    Returns:
        One of "list", "criteria", "constraint", "goal" or "description".
    """
    if LIST_PATTERN.search(content):
        return "list"
    if CRITERIA_PATTERN.search(content):
        return "criteria"
    if CONSTRAINT_PATTERN.search(content):
        return "constraint"
    if GOAL_PATTERN.search(content):
        return "goal"
    return "description"


def _split_long_word(word: str, max_length: int) -> list[str]:
    return [word[i : i + max_length] for i in range(0, len(word), max_length)]


def pack_words(text: str, max_length: int = MAX_CHUNK_LENGTH) -> list[str]:
    """Greedily pack words into pieces of at most ``max_length`` characters.

    Word boundaries are preserved; a single word longer than the limit is
    split hard. Pieces not longer than MIN_CHUNK_LENGTH are dropped as noise.
    """
    pieces = []
    current = ""
    for word in text.split():
        for part in _split_long_word(word, max_length):
            candidate = f"{current} {part}" if current else part
            if len(candidate) > max_length:
                if len(current) > MIN_CHUNK_LENGTH:
                    pieces.append(current)
                current = part
            else:
                current = candidate
    if len(current) > MIN_CHUNK_LENGTH:
        pieces.append(current)
    return pieces


def chunk_prd(content: str) -> list[Chunk]:
    """Split a PRD into retrievable chunks.

    The document is split on ``##`` headings into sections, sections into
    blank-line separated paragraphs. Paragraphs shorter than MIN_CHUNK_LENGTH
    are dropped; paragraphs longer than MAX_CHUNK_LENGTH are re-packed.

    Args:
        content: Markdown PRD text.

    Returns:
        Chunks in document order.

    Raises:
        ChunkingError: If the content is not text or is empty.
    """
    if not isinstance(content, str):
        raise ChunkingError(f"PRD content must be text, got {type(content).__name__}")
    if not content.strip():
        raise ChunkingError("PRD content is empty")

    chunks = []
    for section in SECTION_SPLIT.split(content.replace("\r\n", "\n")):
        if not section.strip():
            continue

        title_line, _, body = section.partition("\n")
        title = title_line.lstrip("#").strip() or "Untitled"

        for paragraph in PARAGRAPH_SPLIT.split(body):
            paragraph = paragraph.strip()
            if len(paragraph) < MIN_CHUNK_LENGTH:
                continue
            if len(paragraph) > MAX_CHUNK_LENGTH:
                pieces = pack_words(paragraph)
            else:
                pieces = [paragraph]
            chunks.extend(Chunk(title, piece, detect_chunk_type(piece)) for piece in pieces)

    return chunks


def order_for_context(scored: list[ScoredItem], band: float = SIMILARITY_BAND) -> list[ScoredItem]:
    """Apply the chunk-type tie-break to similarity-ranked chunks.

    Chunks whose similarity lies within ``band`` of the leading chunk of their
    group are ordered by type priority, then similarity. Chunks without an
    embedding stay at the end.

    Args:
        scored: Chunks ranked by similarity (best first).
        band: Similarity delta treated as a tie.
    """
    embedded = [s for s in scored if s.has_embedding]
    result: list[ScoredItem] = []
    i = 0
    while i < len(embedded):
        leader = embedded[i].similarity
        group = []
        while i < len(embedded) and leader - embedded[i].similarity <= band:
            group.append(embedded[i])
            i += 1
        group.sort(
            key=lambda s: (TYPE_PRIORITY.get(s.item.get("chunk_type"), len(TYPE_PRIORITY)), -s.similarity)
        )
        result.extend(group)
    result.extend(s for s in scored if not s.has_embedding)
    return result


def assemble_context(ordered: list[ScoredItem], max_tokens: int) -> ContextResult:
    """Concatenate chunks in order without exceeding the character budget.

    The budget is ``max_tokens * 4`` characters and includes the header.
    Assembly stops at the first chunk that would overflow it.

    Args:
        ordered: Chunks in the order they should be included.
        max_tokens: Token budget for the whole context string.
    """
    max_chars = max(max_tokens, 0) * CHARS_PER_TOKEN
    top_relevance = max((s.relevance for s in ordered if s.has_embedding), default=0)

    if not ordered:
        context = NO_CONTEXT if len(NO_CONTEXT) <= max_chars else ""
        return ContextResult(context=context, top_relevance=0, chunks_included=0)

    parts = [CONTEXT_HEADER]
    length = len(CONTEXT_HEADER)
    included = 0
    for scored in ordered:
        text = f"### {scored.item['section']}\n{scored.item['content']}\n\n"
        if length + len(text) > max_chars:
            break
        parts.append(text)
        length += len(text)
        included += 1

    context = "".join(parts).rstrip() if included else ""
    return ContextResult(context=context, top_relevance=top_relevance, chunks_included=included)
