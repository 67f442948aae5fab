import json
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .chat_engine import ChatEngine
from .config import config
from .errors import (
    DimensionMismatchError, EmptyInputError, InvalidDocumentError, InvalidIdError, NotFoundError,
    ProviderUnavailableError
)
from .models import (
    ChatHistoryResponse, Conversation, ConversationSummary, CourseWithProgress, Dashboard, DetailedStats,
    IndexContentRequest, SearchResponse, StudentProfile, UpdatePreferencesRequest,
    SendMessageRequest, SendMessageResponse, StartConversationRequest
)

logging.basicConfig(
    level=config.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = ChatEngine.from_config(config)
    yield
    app.state.engine.close()


# Initialize FastAPI app
app = FastAPI(
    title="Course Chat API",
    description="Student assistant chat with retrieval over indexed course material",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Adjust this in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> ChatEngine:
    return request.app.state.engine


def to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (EmptyInputError, InvalidDocumentError, InvalidIdError, DimensionMismatchError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ProviderUnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    logger.error(f"Unexpected error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


@app.get("/")
def root():
    """Root endpoint to verify API is running"""
    return {"message": "Welcome to the Course Chat API", "status": "operational"}


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0"
    }


# Students

@app.get("/students/{student_id}/dashboard", response_model=Dashboard)
def get_dashboard(student_id: str, engine: ChatEngine = Depends(get_engine)):
    """Summary of the student's profile and courses for the dashboard"""
    try:
        return engine.student_directory.get_dashboard(student_id)
    except Exception as e:
        raise to_http_error(e)


@app.get("/students/{student_id}/courses", response_model=List[CourseWithProgress])
def get_student_courses(student_id: str, engine: ChatEngine = Depends(get_engine)):
    try:
        return engine.student_directory.get_courses_with_progress(student_id)
    except Exception as e:
        raise to_http_error(e)


@app.get("/students/{student_id}/stats", response_model=DetailedStats)
def get_student_stats(student_id: str, engine: ChatEngine = Depends(get_engine)):
    try:
        return engine.student_directory.get_detailed_stats(student_id)
    except Exception as e:
        raise to_http_error(e)


@app.patch("/students/{student_id}/preferences", response_model=StudentProfile)
def update_preferences(student_id: str,
                       request: UpdatePreferencesRequest,
                       engine: ChatEngine = Depends(get_engine)):
    try:
        return engine.student_directory.update_preferences(student_id, request)
    except Exception as e:
        raise to_http_error(e)


# Chat

@app.post("/chat/message", response_model=SendMessageResponse, status_code=201)
def send_message(request: SendMessageRequest, engine: ChatEngine = Depends(get_engine)):
    """Send a message and get the assistant's reply"""
    try:
        return engine.send_message(request.studentId, request.message, request.conversationId)
    except Exception as e:
        raise to_http_error(e)


@app.post("/chat/message/stream")
def stream_message(request: SendMessageRequest, engine: ChatEngine = Depends(get_engine)):
    """Send a message and receive the reply as NDJSON events"""
    try:
        events = engine.stream_message(request.studentId, request.message, request.conversationId)
    except Exception as e:
        raise to_http_error(e)

    return StreamingResponse(
        (json.dumps(event) + "\n" for event in events),
        media_type="application/x-ndjson"
    )


@app.post("/chat/conversation/new", response_model=Conversation, status_code=201)
def start_new_conversation(request: StartConversationRequest, engine: ChatEngine = Depends(get_engine)):
    try:
        return engine.start_new_conversation(request.studentId, request.initialContext)
    except Exception as e:
        raise to_http_error(e)


@app.get("/chat/conversations/{student_id}", response_model=List[ConversationSummary])
def get_conversations(student_id: str, engine: ChatEngine = Depends(get_engine)):
    try:
        return engine.list_conversations(student_id)
    except Exception as e:
        raise to_http_error(e)


@app.get("/chat/conversations/{student_id}/{conversation_id}/messages", response_model=ChatHistoryResponse)
def get_conversation_messages(student_id: str,
                              conversation_id: str,
                              page: int = Query(1, ge=1),
                              limit: int = Query(10, ge=1, le=100),
                              fromEnd: bool = False,
                              engine: ChatEngine = Depends(get_engine)):
    """Paginated messages; with fromEnd, page 1 holds the latest messages"""
    try:
        return engine.get_chat_history(student_id, conversation_id, page, limit, fromEnd)
    except Exception as e:
        raise to_http_error(e)


@app.delete("/chat/conversations/{student_id}/{conversation_id}", status_code=204)
def delete_conversation(student_id: str, conversation_id: str, engine: ChatEngine = Depends(get_engine)):
    try:
        engine.delete_conversation(student_id, conversation_id)
    except Exception as e:
        raise to_http_error(e)
    return Response(status_code=204)


# Knowledge

@app.post("/knowledge/index", status_code=201)
def index_content(request: IndexContentRequest, engine: ChatEngine = Depends(get_engine)):
    """Index raw course text"""
    try:
        return engine.knowledge_store.index_course_content(
            request.courseId,
            request.content,
            request.sourceFile or "unknown"
        )
    except Exception as e:
        raise to_http_error(e)


@app.post("/knowledge/index-from-pdf", status_code=201)
def index_from_pdf(file: UploadFile = File(...),
                   courseId: str = Form(...),
                   resume: bool = Form(False),
                   engine: ChatEngine = Depends(get_engine)):
    """Parse an uploaded PDF and index its text"""
    if file.content_type != "application/pdf":
        raise HTTPException(status_code=400, detail="The file must be a PDF")
    if not courseId.strip():
        raise HTTPException(status_code=400, detail="courseId is required")

    try:
        data = file.file.read()
        return engine.knowledge_store.index_pdf(courseId, data, file.filename or "uploaded.pdf", resume=resume)
    except Exception as e:
        raise to_http_error(e)


@app.get("/knowledge/search", response_model=SearchResponse)
def search(q: str,
           courseId: Optional[str] = None,
           limit: int = Query(config.SEARCH_LIMIT, ge=1, le=50),
           minScore: float = Query(config.SEARCH_MIN_SCORE, ge=0, le=1),
           engine: ChatEngine = Depends(get_engine)):
    """Semantic search over indexed course material"""
    try:
        results = engine.knowledge_store.search_similar(q, course_id=courseId, limit=limit, min_score=minScore)
    except Exception as e:
        raise to_http_error(e)
    return SearchResponse(results=results, count=len(results))


@app.get("/knowledge/stats")
def get_stats(engine: ChatEngine = Depends(get_engine)):
    return engine.knowledge_store.get_stats()


@app.delete("/knowledge/course/{course_id}")
def delete_course_knowledge(course_id: str, engine: ChatEngine = Depends(get_engine)):
    try:
        return engine.knowledge_store.delete_course_chunks(course_id)
    except Exception as e:
        raise to_http_error(e)
