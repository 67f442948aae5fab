import logging
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pymongo import MongoClient

from .ai_service import AIService
from .config import Config
from .conversation_cache import ConversationCache
from .conversation_memory import ConversationMemory
from .errors import EmptyInputError, NotFoundError
from .knowledge_store import KnowledgeStore
from .models import (
    AIResponse, ChatHistoryResponse, ChatMessage, Conversation, ConversationSummary,
    Message, Pagination, SendMessageResponse, StudentContext
)
from .student_directory import StudentDirectory

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class ChatEngine:
    """
    Chat orchestration: conversation history, retrieved course material and the
    student's profile are combined into one completion request, and the exchange
    is persisted and cached.
    """

    def __init__(self,
                 config: Config,
                 memory: ConversationMemory,
                 knowledge_store: KnowledgeStore,
                 ai_service: AIService,
                 student_directory: Optional[StudentDirectory] = None,
                 cache: Optional[ConversationCache] = None):
        self.config = config
        self.memory = memory
        self.knowledge_store = knowledge_store
        self.ai_service = ai_service
        self.student_directory = student_directory
        self.cache = cache or ConversationCache(
            loader=memory.get_recent_messages,
            max_messages=config.MAX_HISTORY_MESSAGES
        )
        self.client: Optional[MongoClient] = None

    @classmethod
    def from_config(cls, config: Config) -> "ChatEngine":
        """Wire the engine to MongoDB and OpenAI"""
        client = MongoClient(config.MONGO_URI)
        db = client[config.MONGO_DB]

        ai_service = AIService(config)
        memory = ConversationMemory(db)
        knowledge_store = KnowledgeStore(db["knowledgechunks"], ai_service, chunk_size=config.CHUNK_SIZE)
        memory.create_indexes()
        knowledge_store.create_indexes()

        engine = cls(config, memory, knowledge_store, ai_service, StudentDirectory(db))
        engine.client = client
        return engine

    def close(self):
        self.cache.clear()
        if self.client is not None:
            self.client.close()
            self.client = None

    def _resolve_conversation(self, student_id: str, conversation_id: Optional[str]) -> Conversation:
        """The student's conversation with that id, or a new one"""
        if conversation_id:
            conversation = self.memory.get_conversation(conversation_id, student_id)
            if conversation:
                return conversation
            logger.info(f"Conversation {conversation_id} not found for student {student_id}, creating a new one")

        conversation = self.memory.create_conversation(student_id)
        self.cache.start_fresh(conversation.id)
        return conversation

    def _ensure_not_deleted(self, conversation_id: str, student_id: str):
        """Called with the conversation lock held; a delete may have run while we waited"""
        self.memory.require_conversation(conversation_id, student_id)

    def _retrieve_context(self, message: str) -> Tuple[List[str], List[int]]:
        """Course material relevant to the message; failures give an empty context"""
        try:
            results = self.knowledge_store.search_similar(
                message,
                limit=self.config.RAG_LIMIT,
                min_score=self.config.RAG_MIN_SCORE
            )
        except Exception as e:
            logger.warning(f"RAG search failed: {e}")
            return [], []

        chunks_used = [r.chunkIndex for r in results if r.chunkIndex is not None]
        logger.debug(
            f"Found {len(results)} relevant context chunks for RAG "
            f"(chunk indices: {', '.join(map(str, chunks_used)) or 'none'})"
        )
        return [r.content for r in results], chunks_used

    def _student_context(self, student_id: str) -> Optional[StudentContext]:
        if self.student_directory is None:
            return None
        try:
            return self.student_directory.get_student_context(student_id)
        except Exception as e:
            logger.warning(f"Could not load context for student {student_id}: {e}")
            return None

    @staticmethod
    def _response_metadata(response: AIResponse, started: float, chunks_used: List[int]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "tokensUsed": response.tokensUsed,
            "model": response.model,
            "responseTime": int((time.monotonic() - started) * 1000)
        }
        if chunks_used:
            metadata["chunksUsed"] = chunks_used
        if response.degraded:
            metadata["degradedReason"] = response.reason
        return metadata

    def _record_exchange(self, conversation_id: str, message: str, response: AIResponse,
                         started: float, chunks_used: List[int]) -> ChatMessage:
        assistant_message = self.memory.add_message(
            conversation_id,
            "assistant",
            response.content,
            self._response_metadata(response, started, chunks_used)
        )
        self.memory.touch_conversation(conversation_id, new_messages=2)
        self.cache.append(
            conversation_id,
            Message(role="user", content=message),
            Message(role="assistant", content=response.content)
        )
        return assistant_message

    def send_message(self, student_id: str, message: str,
                     conversation_id: Optional[str] = None) -> SendMessageResponse:
        """Answer a student message, creating the conversation if needed"""
        if not message or not message.strip():
            raise EmptyInputError("Message cannot be empty")

        conversation = self._resolve_conversation(student_id, conversation_id)

        with self.cache.lock(conversation.id):
            self._ensure_not_deleted(conversation.id, student_id)
            history = self.cache.get(conversation.id)
            user_message = self.memory.add_message(conversation.id, "user", message)

            relevant_context, chunks_used = self._retrieve_context(message)
            student_context = self._student_context(student_id)

            started = time.monotonic()
            response = self.ai_service.generate_response(
                message,
                history,
                relevant_context or None,
                student_context
            )

            assistant_message = self._record_exchange(conversation.id, message, response, started, chunks_used)

        return SendMessageResponse(
            conversationId=conversation.id,
            userMessage=user_message,
            assistantMessage=assistant_message
        )

    def stream_message(self, student_id: str, message: str,
                       conversation_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """
        Answer a student message as a stream of events.

        Yields {"type": "chunk", "delta"} events, then a final {"type": "done"}
        event with the persisted messages. If the provider fails after output has
        started, an {"type": "error"} event ends the stream instead and nothing is
        persisted for the assistant. Input is validated before the first event.
        """
        if not message or not message.strip():
            raise EmptyInputError("Message cannot be empty")

        conversation = self._resolve_conversation(student_id, conversation_id)
        return self._stream_exchange(conversation, student_id, message)

    def _stream_exchange(self, conversation: Conversation, student_id: str,
                         message: str) -> Iterator[Dict[str, Any]]:
        with self.cache.lock(conversation.id):
            try:
                self._ensure_not_deleted(conversation.id, student_id)
            except NotFoundError as e:
                yield {"type": "error", "message": str(e)}
                return

            history = self.cache.get(conversation.id)
            user_message = self.memory.add_message(conversation.id, "user", message)

            relevant_context, chunks_used = self._retrieve_context(message)
            student_context = self._student_context(student_id)

            started = time.monotonic()
            response = self.ai_service.degraded_response(message)
            if response:
                deltas = self.ai_service.stream_words(response.content)
            else:
                deltas = self.ai_service.generate_stream(
                    message, history, relevant_context or None, student_context
                )

            parts: List[str] = []
            try:
                for delta in deltas:
                    parts.append(delta)
                    yield {"type": "chunk", "delta": delta}
            except Exception as e:
                if parts:
                    logger.error(f"Completion stream failed after {len(parts)} chunks: {e}", exc_info=True)
                    # The user message is stored, so the counters and the cache must include it
                    self.memory.touch_conversation(conversation.id, new_messages=1)
                    self.cache.append(conversation.id, Message(role="user", content=message))
                    yield {"type": "error", "message": "The response was interrupted, please try again."}
                    return

                logger.error(f"Completion stream failed: {e}", exc_info=True)
                response = self.ai_service.generate_placeholder_response(message, reason="provider_error")
                for delta in self.ai_service.stream_words(response.content):
                    parts.append(delta)
                    yield {"type": "chunk", "delta": delta}

            if response is None:
                response = AIResponse(content="".join(parts), model=self.ai_service.model)

            assistant_message = self._record_exchange(conversation.id, message, response, started, chunks_used)

        yield {
            "type": "done",
            "conversationId": conversation.id,
            "userMessage": user_message.model_dump(mode="json"),
            "assistantMessage": assistant_message.model_dump(mode="json")
        }

    def start_new_conversation(self, student_id: str, initial_context: Optional[str] = None) -> Conversation:
        """Create a new active conversation with its own empty history"""
        conversation = self.memory.create_conversation(student_id)
        self.cache.start_fresh(conversation.id, initial_context)
        logger.info(f"New conversation started: {conversation.id}")
        return conversation

    def list_conversations(self, student_id: str) -> List[ConversationSummary]:
        return self.memory.list_conversations(student_id)

    def get_chat_history(self,
                         student_id: str,
                         conversation_id: str,
                         page: int = 1,
                         limit: int = 10,
                         from_end: bool = False) -> ChatHistoryResponse:
        """
        One page of a conversation's messages, oldest first within the page.
        With from_end, page 1 holds the last `limit` messages.
        """
        conversation = self.memory.require_conversation(conversation_id, student_id)
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        total = self.memory.count_messages(conversation_id)

        if from_end:
            end = total - (page - 1) * limit
            start = max(end - limit, 0)
            messages = self.memory.get_messages_page(conversation_id, start, end - start) if end > 0 else []
            has_more = end > 0 and start > 0
        else:
            skip = (page - 1) * limit
            messages = self.memory.get_messages_page(conversation_id, skip, limit)
            has_more = skip + len(messages) < total

        return ChatHistoryResponse(
            messages=messages,
            conversation=conversation,
            pagination=Pagination(page=page, limit=limit, total=total, hasMore=has_more)
        )

    def delete_conversation(self, student_id: str, conversation_id: str) -> int:
        """Delete a conversation, its messages and its cached history"""
        self.memory.require_conversation(conversation_id, student_id)
        with self.cache.lock(conversation_id):
            deleted = self.memory.delete_conversation(conversation_id)
        self.cache.evict(conversation_id)
        logger.info(f"Deleted conversation {conversation_id} with {deleted} messages")
        return deleted
