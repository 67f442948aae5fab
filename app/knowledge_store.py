import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.collection import Collection
from pypdf import PdfReader

from .ai_service import AIService
from .errors import EmptyInputError, InvalidDocumentError, InvalidIdError, ProviderUnavailableError
from .models import SearchResult
from .utils import cosine_similarity, is_object_id, split_into_chunks

logger = logging.getLogger(__name__)


def course_object_id(course_id: str) -> ObjectId:
    """Course ids are caller input here, so a malformed one is a bad request"""
    if not is_object_id(course_id):
        raise InvalidIdError(f"'{course_id}' is not a valid course id")
    return ObjectId(course_id)


class KnowledgeStore:
    """
    Course knowledge base stored in MongoDB.

    Chunks are embedded one at a time on indexing. Search is a linear scan over
    every chunk of the course, which is fine for a handful of course PDFs but
    has no index structure behind it.
    """

    def __init__(self, chunks: Collection, ai_service: AIService, chunk_size: int = 1000):
        self.chunks = chunks
        self.ai_service = ai_service
        self.chunk_size = chunk_size

    def create_indexes(self):
        self.chunks.create_index("courseId")
        self.chunks.create_index([("courseId", 1), ("sourceFile", 1), ("chunkIndex", 1)])

    def index_course_content(self,
                             course_id: str,
                             content: str,
                             source_file: str = "unknown",
                             resume: bool = False) -> Dict[str, int]:
        """
        Split content into chunks, embed each one and store it for the course.

        Chunks are processed sequentially. If the embedding provider fails, the
        chunks stored so far are kept; calling again with resume=True skips the
        chunk indices already stored for this course and source file.
        """
        if not content or not content.strip():
            raise EmptyInputError("Content cannot be empty")

        course_oid = course_object_id(course_id)
        logger.info(f"Indexing content for course {course_id} from file {source_file}")

        chunks = split_into_chunks(content, self.chunk_size)
        logger.debug(f"Content split into {len(chunks)} chunks")

        done = set()
        if resume:
            done = set(self.chunks.distinct(
                "chunkIndex", {"courseId": course_oid, "sourceFile": source_file}
            ))
            if done:
                logger.info(f"Resuming indexing of {source_file}, {len(done)} chunks already stored")

        created = 0
        for index, chunk_text in enumerate(chunks):
            if index in done:
                continue

            try:
                embedding = self.ai_service.create_embedding(chunk_text)
            except ProviderUnavailableError as e:
                logger.error(
                    f"Indexing of course {course_id} stopped at chunk {index}/{len(chunks)} "
                    f"({created} chunks stored): {e}"
                )
                raise ProviderUnavailableError(
                    f"Indexing stopped at chunk {index} of {len(chunks)} after storing "
                    f"{created} chunks, retry with resume to continue"
                ) from e

            self.chunks.insert_one({
                "courseId": course_oid,
                "content": chunk_text,
                "embedding": embedding,
                "sourceFile": source_file,
                "chunkIndex": index,
                "createdAt": datetime.now(timezone.utc),
            })
            created += 1

            if (index + 1) % 10 == 0:
                logger.debug(f"Processed {index + 1}/{len(chunks)} chunks")

        logger.info(f"Successfully indexed {created} chunks for course {course_id}")
        return {"chunksCreated": created}

    def parse_pdf(self, data: bytes) -> str:
        """Extract the text of a PDF document"""
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as e:
            raise InvalidDocumentError(f"Invalid PDF: {e}") from e

        text = "\n".join(pages).strip()
        if not text:
            raise EmptyInputError("No text could be extracted from the PDF")

        logger.debug(f"PDF parsed: {len(text)} characters extracted")
        return text

    def index_pdf(self, course_id: str, data: bytes, file_name: str = "uploaded.pdf",
                  resume: bool = False) -> Dict[str, Any]:
        text = self.parse_pdf(data)
        result = self.index_course_content(course_id, text, file_name, resume=resume)
        return {**result, "fileName": file_name}

    def search_similar(self,
                       query: str,
                       course_id: Optional[str] = None,
                       limit: int = 5,
                       min_score: float = 0.7) -> List[SearchResult]:
        """
        Rank stored chunks by cosine similarity to the query.
        Results have score >= min_score, best first; equal scores keep storage order.
        """
        if not query or not query.strip():
            raise EmptyInputError("Query cannot be empty")

        query_filter = {"courseId": course_object_id(course_id)} if course_id else {}
        logger.debug(f"Searching similar content for query: {query[:50]}...")

        query_embedding = self.ai_service.create_embedding(query)

        scored = []
        compared = 0
        for chunk in self.chunks.find(query_filter):
            compared += 1
            embedding = chunk.get("embedding") or []
            if len(embedding) != len(query_embedding):
                logger.warning(
                    f"Skipping chunk {chunk.get('_id')} with embedding size {len(embedding)}, "
                    f"expected {len(query_embedding)}"
                )
                continue

            score = cosine_similarity(query_embedding, embedding)
            if score < min_score:
                continue

            scored.append(SearchResult(
                content=chunk["content"],
                courseId=str(chunk["courseId"]),
                score=score,
                chunkIndex=chunk.get("chunkIndex"),
                sourceFile=chunk.get("sourceFile"),
                metadata=chunk.get("metadata")
            ))

        # sorted() is stable, so ties keep storage order
        results = sorted(scored, key=lambda r: r.score, reverse=True)[:limit]

        logger.debug(f"Compared {compared} chunks, {len(results)} above minScore {min_score}")
        return results

    def get_stats(self) -> Dict[str, int]:
        total_chunks = self.chunks.count_documents({})
        courses = self.chunks.distinct("courseId")
        return {
            "totalChunks": total_chunks,
            "coursesCovered": len(courses)
        }

    def delete_course_chunks(self, course_id: str) -> Dict[str, int]:
        result = self.chunks.delete_many({"courseId": course_object_id(course_id)})
        logger.info(f"Deleted {result.deleted_count} chunks for course {course_id}")
        return {"deletedCount": result.deleted_count}
