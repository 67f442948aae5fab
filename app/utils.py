import math
import re
from typing import List, Sequence

from bson import ObjectId
from bson.errors import InvalidId

from .errors import DimensionMismatchError, NotFoundError

# Sentence-ending punctuation followed by whitespace
SENTENCE_BOUNDARY = re.compile(r'(?<=[.!?])\s+')


def split_into_chunks(text: str, max_chunk_size: int = 1000) -> List[str]:
    """
    Split text into sentence-aligned chunks of at most max_chunk_size characters.
    A sentence longer than max_chunk_size is kept whole as its own chunk.
    """
    if not text or not text.strip():
        return []

    chunks = []
    current_chunk = ""

    for sentence in SENTENCE_BOUNDARY.split(text.strip()):
        if not sentence:
            continue
        if len(current_chunk + sentence) > max_chunk_size and current_chunk:
            chunks.append(current_chunk.strip())
            current_chunk = sentence
        else:
            current_chunk += (" " if current_chunk else "") + sentence

    if current_chunk:
        chunks.append(current_chunk.strip())

    return chunks


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors, 0.0 if either is a zero vector"""
    if len(vec_a) != len(vec_b):
        raise DimensionMismatchError(
            f"Vectors must have the same length ({len(vec_a)} != {len(vec_b)})"
        )

    dot_product = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for a, b in zip(vec_a, vec_b):
        dot_product += a * b
        norm_a += a * a
        norm_b += b * b

    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0:
        return 0.0
    return dot_product / magnitude


def to_object_id(value, kind: str = "Document") -> ObjectId:
    """Convert an id string to an ObjectId, raising NotFoundError for malformed ids"""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{kind} {value} not found")


def is_object_id(value: str) -> bool:
    return ObjectId.is_valid(value)
