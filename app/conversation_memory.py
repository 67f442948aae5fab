from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pymongo
from bson import ObjectId
from pymongo.database import Database

from .errors import NotFoundError
from .models import ChatMessage, Conversation, ConversationSummary, Message
from .utils import to_object_id

DEFAULT_CONVERSATION_TITLE = "New conversation"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_conversation(doc: Dict[str, Any]) -> Conversation:
    return Conversation(
        id=str(doc["_id"]),
        studentId=str(doc["studentId"]),
        title=doc.get("title", DEFAULT_CONVERSATION_TITLE),
        isActive=doc.get("isActive", False),
        lastMessageAt=doc.get("lastMessageAt"),
        messageCount=doc.get("messageCount", 0),
        createdAt=doc.get("createdAt"),
        updatedAt=doc.get("updatedAt")
    )


def to_chat_message(doc: Dict[str, Any]) -> ChatMessage:
    return ChatMessage(
        id=str(doc["_id"]),
        conversationId=str(doc["conversationId"]),
        role=doc["role"],
        content=doc["content"],
        metadata=doc.get("metadata"),
        createdAt=doc.get("createdAt")
    )


class ConversationMemory:
    """Conversations and their messages stored in MongoDB"""

    def __init__(self, db: Database):
        self.db = db
        self.conversations = db["conversations"]
        self.messages = db["chatmessages"]

    def create_indexes(self):
        # Indexes for better performance
        self.conversations.create_index("studentId")
        self.messages.create_index([("conversationId", 1), ("createdAt", 1)])

    def create_conversation(self, student_id: str, title: str = DEFAULT_CONVERSATION_TITLE) -> Conversation:
        """Create the student's active conversation; every other one becomes inactive"""
        student_oid = to_object_id(student_id, "Student")
        now = _now()
        doc = {
            "studentId": student_oid,
            "title": title,
            "isActive": True,
            "lastMessageAt": now,
            "messageCount": 0,
            "createdAt": now,
            "updatedAt": now
        }
        result = self.conversations.insert_one(doc)
        doc["_id"] = result.inserted_id

        self.conversations.update_many(
            {"studentId": student_oid, "_id": {"$ne": result.inserted_id}},
            {"$set": {"isActive": False, "updatedAt": now}}
        )

        return to_conversation(doc)

    def get_conversation(self, conversation_id: str, student_id: Optional[str] = None) -> Optional[Conversation]:
        """Conversation by id, restricted to the student's when student_id is given"""
        if not ObjectId.is_valid(conversation_id):
            return None

        query: Dict[str, Any] = {"_id": ObjectId(conversation_id)}
        if student_id is not None:
            if not ObjectId.is_valid(student_id):
                return None
            query["studentId"] = ObjectId(student_id)

        doc = self.conversations.find_one(query)
        return to_conversation(doc) if doc else None

    def require_conversation(self, conversation_id: str, student_id: str) -> Conversation:
        conversation = self.get_conversation(conversation_id, student_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def list_conversations(self, student_id: str) -> List[ConversationSummary]:
        """All conversations for a student, most recent activity first"""
        cursor = self.conversations.find(
            {"studentId": to_object_id(student_id, "Student")}
        ).sort("lastMessageAt", pymongo.DESCENDING)

        return [
            ConversationSummary(
                id=str(doc["_id"]),
                title=doc.get("title", DEFAULT_CONVERSATION_TITLE),
                isActive=doc.get("isActive", False),
                lastMessageAt=doc.get("lastMessageAt"),
                messageCount=doc.get("messageCount", 0)
            )
            for doc in cursor
        ]

    def add_message(self, conversation_id: str, role: str, content: str,
                    metadata: Optional[Dict[str, Any]] = None) -> ChatMessage:
        doc: Dict[str, Any] = {
            "conversationId": to_object_id(conversation_id, "Conversation"),
            "role": role,
            "content": content,
            "createdAt": _now()
        }
        if metadata:
            doc["metadata"] = metadata

        result = self.messages.insert_one(doc)
        doc["_id"] = result.inserted_id
        return to_chat_message(doc)

    def touch_conversation(self, conversation_id: str, new_messages: int = 2):
        """Record activity on a conversation"""
        now = _now()
        self.conversations.update_one(
            {"_id": to_object_id(conversation_id, "Conversation")},
            {
                "$set": {"lastMessageAt": now, "updatedAt": now},
                "$inc": {"messageCount": new_messages}
            }
        )

    def get_recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]:
        """The most recent `limit` messages, oldest first"""
        if not ObjectId.is_valid(conversation_id):
            return []

        cursor = self.messages.find(
            {"conversationId": ObjectId(conversation_id)}
        ).sort("createdAt", pymongo.DESCENDING).limit(limit)

        docs = list(cursor)
        docs.reverse()
        return [Message(role=doc["role"], content=doc["content"]) for doc in docs]

    def count_messages(self, conversation_id: str) -> int:
        return self.messages.count_documents({"conversationId": to_object_id(conversation_id, "Conversation")})

    def get_messages_page(self, conversation_id: str, skip: int, limit: int) -> List[ChatMessage]:
        """Messages in chronological order, paginated by offset"""
        if limit <= 0:
            return []

        cursor = self.messages.find(
            {"conversationId": to_object_id(conversation_id, "Conversation")}
        ).sort("createdAt", pymongo.ASCENDING).skip(skip).limit(limit)

        return [to_chat_message(doc) for doc in cursor]

    def delete_conversation(self, conversation_id: str) -> int:
        """Delete a conversation and its messages, returning the number of deleted messages"""
        conversation_oid = to_object_id(conversation_id, "Conversation")
        result = self.messages.delete_many({"conversationId": conversation_oid})
        self.conversations.delete_one({"_id": conversation_oid})
        return result.deleted_count
