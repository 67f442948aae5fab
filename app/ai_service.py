import logging
import random
import threading
import time
from collections import deque
from typing import Callable, Deque, Iterator, List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from .config import Config
from .errors import EmptyInputError, ProviderUnavailableError, RateLimitedError
from .models import AIResponse, Message, StudentContext

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "[PLACEHOLDER RESPONSE - OpenAI is not available]"

PLACEHOLDER_RESPONSES = [
    "Hi! I'm your study assistant. That looks like an interesting question. Could you tell me more "
    "about the specific course topic you need help with?",
    "I understand your question. This is a topic many students find challenging. Let's go through "
    "the concepts step by step. Where would you like to start?",
    "Great question! It shows you are thinking critically about the material. Try reviewing the "
    "related lesson and we can go over it together.",
    "Thanks for your question. For now I recommend reviewing the course material and coming back "
    "with a specific question.",
]

BUSY_RESPONSE = (
    "I'm receiving a lot of questions right now. Please wait a moment and send your message again."
)


class SlidingWindowRateLimiter:
    """
    Counts accepted requests in a sliding time window.
    Rejected requests are not recorded. max_requests <= 0 disables limiting.
    """

    def __init__(self, max_requests: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def try_acquire(self) -> bool:
        if not self.enabled:
            return True

        with self._lock:
            now = self.clock()
            while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
                self._timestamps.popleft()

            if len(self._timestamps) >= self.max_requests:
                return False

            self._timestamps.append(now)
            return True

    def acquire(self) -> None:
        """Record a request or raise RateLimitedError if the window is full"""
        if not self.try_acquire():
            raise RateLimitedError(
                f"Rate limit of {self.max_requests} requests per {self.window_seconds:g}s reached"
            )


class AIService:
    """Embedding and chat completion provider backed by OpenAI through langchain"""

    BASE_SYSTEM_PROMPT = """You are a friendly and helpful study assistant for students of an online course platform.

Your goals:
- Help students with questions about the content of their courses
- Motivate them and offer encouragement when needed
- Suggest resources and study techniques
- Answer clearly, concisely and in a friendly tone

Rules:
- Do not give exam answers directly, guide the student to reach the answer
- If you don't know something, admit it and suggest looking for additional help
- Keep a positive and motivating tone
- Use practical examples whenever possible"""

    def __init__(self, config: Config, rate_limiter: Optional[SlidingWindowRateLimiter] = None):
        self.config = config
        self.model = config.OPENAI_MODEL
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            config.RATE_LIMIT_MAX_REQUESTS,
            config.RATE_LIMIT_WINDOW_SECONDS
        )

        self.embeddings = None
        self.llm = None
        if config.OPENAI_API_KEY:
            self.embeddings = OpenAIEmbeddings(
                model=config.EMBEDDING_MODEL,
                api_key=config.OPENAI_API_KEY
            )
            self.llm = ChatOpenAI(
                model=config.OPENAI_MODEL,
                temperature=config.OPENAI_TEMPERATURE,
                max_tokens=config.OPENAI_MAX_TOKENS,
                api_key=config.OPENAI_API_KEY
            )
        else:
            logger.warning("OPENAI_API_KEY is not set, chat will answer with placeholder responses")

    def is_configured(self) -> bool:
        return self.llm is not None

    def create_embedding(self, text: str) -> List[float]:
        """Embed a single text, raising ProviderUnavailableError on provider problems"""
        if not text or not text.strip():
            raise EmptyInputError("Cannot create an embedding for empty text")

        if self.embeddings is None:
            raise ProviderUnavailableError("Embedding provider is not configured")

        try:
            return self.embeddings.embed_query(text)
        except Exception as e:
            logger.error(f"Embedding request failed: {e}", exc_info=True)
            raise ProviderUnavailableError(f"Embedding request failed: {e}") from e

    def build_contextual_system_prompt(self,
                                       student_context: Optional[StudentContext] = None,
                                       relevant_context: Optional[Sequence[str]] = None) -> str:
        """Base prompt extended with the student's profile and retrieved course material"""
        prompt = self.BASE_SYSTEM_PROMPT

        if student_context:
            prompt += f"\n\nStudent information:\n- Name: {student_context.name}"
            if student_context.currentCourse:
                prompt += f"\n- Current course: {student_context.currentCourse}"
            if student_context.progress is not None:
                prompt += f"\n- Course progress: {student_context.progress:.0f}%"
            prompt += "\nAddress the student by name and adapt your explanations to their progress."

        if relevant_context:
            material = "\n\n".join(
                f"[{i + 1}] {content}" for i, content in enumerate(relevant_context)
            )
            prompt += (
                "\n\nRelevant course material:\n"
                f"{material}\n\n"
                "Base your answer on this material when it is relevant to the question. "
                "If it does not cover the question, say so and answer from general knowledge."
            )

        return prompt

    def _build_messages(self, user_message: str, history: Sequence[Message],
                        system_prompt: str) -> List[BaseMessage]:
        messages: List[BaseMessage] = [SystemMessage(content=system_prompt)]
        for message in history:
            if message.role == "user":
                messages.append(HumanMessage(content=message.content))
            elif message.role == "assistant":
                messages.append(AIMessage(content=message.content))
            else:
                messages.append(SystemMessage(content=message.content))
        messages.append(HumanMessage(content=user_message))
        return messages

    def degraded_response(self, user_message: str) -> Optional[AIResponse]:
        """Fallback response when the provider must not be called, otherwise None"""
        try:
            self.rate_limiter.acquire()
        except RateLimitedError as e:
            logger.warning(f"{e}, answering with busy response")
            return AIResponse(content=BUSY_RESPONSE, tokensUsed=0, model="rate-limited",
                              status="degraded", reason="rate_limited")

        if not self.is_configured():
            return self.generate_placeholder_response(user_message, reason="not_configured")

        return None

    def generate_response(self,
                          user_message: str,
                          history: Optional[Sequence[Message]] = None,
                          relevant_context: Optional[Sequence[str]] = None,
                          student_context: Optional[StudentContext] = None) -> AIResponse:
        """
        Generate the assistant reply for a user message.

        Never raises for provider problems: rate limiting, missing configuration and
        provider errors all produce a degraded response with placeholder content.
        """
        logger.debug(f"Generating response for: {user_message[:50]}...")

        degraded = self.degraded_response(user_message)
        if degraded:
            return degraded

        system_prompt = self.build_contextual_system_prompt(student_context, relevant_context)
        messages = self._build_messages(user_message, history or [], system_prompt)

        try:
            response = self.llm.invoke(messages)
        except Exception as e:
            logger.error(f"Completion request failed: {e}", exc_info=True)
            return self.generate_placeholder_response(user_message, reason="provider_error")

        usage = getattr(response, "usage_metadata", None) or {}
        response_metadata = getattr(response, "response_metadata", None) or {}

        return AIResponse(
            content=response.content,
            tokensUsed=usage.get("total_tokens"),
            model=response_metadata.get("model_name", self.model)
        )

    def generate_stream(self,
                        user_message: str,
                        history: Optional[Sequence[Message]] = None,
                        relevant_context: Optional[Sequence[str]] = None,
                        student_context: Optional[StudentContext] = None) -> Iterator[str]:
        """
        Yield the assistant reply as text deltas straight from the provider.

        Callers check degraded_response() first; errors raised while iterating
        propagate to the caller.
        """
        if not self.is_configured():
            raise ProviderUnavailableError("Completion provider is not configured")

        system_prompt = self.build_contextual_system_prompt(student_context, relevant_context)
        messages = self._build_messages(user_message, history or [], system_prompt)

        for chunk in self.llm.stream(messages):
            if chunk.content:
                yield chunk.content

    def generate_placeholder_response(self, user_message: str, reason: str = "not_configured") -> AIResponse:
        """Canned reply used when OpenAI is unavailable"""
        return AIResponse(
            content=f"{PLACEHOLDER_PREFIX}\n\n{random.choice(PLACEHOLDER_RESPONSES)}",
            tokensUsed=0,
            model="placeholder",
            status="degraded",
            reason=reason
        )

    @staticmethod
    def stream_words(text: str) -> Iterator[str]:
        """Split a finished reply into word deltas"""
        words = text.split(" ")
        for i, word in enumerate(words):
            yield word if i == len(words) - 1 else word + " "
