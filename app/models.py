from datetime import datetime
from typing import List, Optional, Dict, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

from .utils import is_object_id

MessageRole = Literal["user", "assistant", "system"]


def _check_object_id(value: Optional[str]) -> Optional[str]:
    if value is not None and not is_object_id(value):
        raise ValueError(f"'{value}' is not a valid id")
    return value


class Message(BaseModel):
    """A role-tagged message as sent to the completion provider"""
    role: MessageRole
    content: str


class ChatMessage(BaseModel):
    id: str
    conversationId: str
    role: MessageRole
    content: str
    metadata: Optional[Dict[str, Any]] = None
    createdAt: Optional[datetime] = None


class Conversation(BaseModel):
    id: str
    studentId: str
    title: str
    isActive: bool
    lastMessageAt: Optional[datetime] = None
    messageCount: int = 0
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class SearchResult(BaseModel):
    content: str
    courseId: str
    score: float
    chunkIndex: Optional[int] = None
    sourceFile: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class AIResponse(BaseModel):
    """Completion result; status is "degraded" when content is fallback text"""
    content: str
    tokensUsed: Optional[int] = None
    model: Optional[str] = None
    status: Literal["ok", "degraded"] = "ok"
    reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.status == "degraded"


class StudentContext(BaseModel):
    name: str
    currentCourse: Optional[str] = None
    progress: Optional[float] = None


# Students and courses

class StudentPreferences(BaseModel):
    theme: Optional[Literal["light", "dark"]] = None
    language: Optional[str] = None
    notifications: Optional[StrictBool] = None


class StudentProfile(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    avatar: Optional[str] = None
    preferences: StudentPreferences = Field(default_factory=StudentPreferences)


class Course(BaseModel):
    id: str
    title: str
    description: str = ""
    thumbnail: Optional[str] = None
    totalLessons: int = 0
    category: str = ""
    tags: List[str] = Field(default_factory=list)
    durationMinutes: int = 0


class CourseProgress(BaseModel):
    completedLessons: int = 0
    progressPercentage: float = 0
    lastAccessedAt: Optional[datetime] = None
    timeSpentMinutes: int = 0


class CourseWithProgress(Course):
    progress: Optional[CourseProgress] = None


class StudentStats(BaseModel):
    totalCourses: int
    completedCourses: int
    inProgressCourses: int
    totalTimeSpentMinutes: int
    totalTimeSpentFormatted: str


class RecentCourse(BaseModel):
    course: Optional[Course] = None
    progress: float
    lastAccessed: Optional[datetime] = None


class Dashboard(BaseModel):
    student: StudentProfile
    stats: StudentStats
    recentCourses: List[RecentCourse]


class CompletedVsInProgress(BaseModel):
    completed: int
    inProgress: int


class DetailedStats(BaseModel):
    totalStudyHours: float
    completedVsInProgress: CompletedVsInProgress
    studyStreak: int
    weeklyAverageProgress: float
    timeByCategory: Dict[str, float]


# Requests

class SendMessageRequest(BaseModel):
    studentId: str
    message: str = Field(min_length=1)
    conversationId: Optional[str] = None

    @field_validator("studentId", "conversationId")
    @classmethod
    def check_ids(cls, value):
        return _check_object_id(value)


class StartConversationRequest(BaseModel):
    studentId: str
    initialContext: Optional[str] = None

    @field_validator("studentId")
    @classmethod
    def check_ids(cls, value):
        return _check_object_id(value)


class IndexContentRequest(BaseModel):
    courseId: str
    content: str = Field(min_length=1)
    sourceFile: Optional[str] = None

    @field_validator("courseId")
    @classmethod
    def check_ids(cls, value):
        return _check_object_id(value)


class UpdatePreferencesRequest(StudentPreferences):
    """Only the known preference fields are accepted"""
    model_config = ConfigDict(extra="forbid")


# Responses

class SendMessageResponse(BaseModel):
    conversationId: str
    userMessage: ChatMessage
    assistantMessage: ChatMessage


class ConversationSummary(BaseModel):
    id: str
    title: str
    isActive: bool
    lastMessageAt: Optional[datetime] = None
    messageCount: int = 0


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    hasMore: bool


class ChatHistoryResponse(BaseModel):
    messages: List[ChatMessage]
    conversation: Conversation
    pagination: Pagination


class SearchResponse(BaseModel):
    results: List[SearchResult]
    count: int
