"""Redis-backed document and conversation stores.

Aggregates are plain JSON strings updated with WATCH/MULTI/EXEC, so two
writers touching the same class aggregate serialize through optimistic
retries instead of a lock.

For Cloud Run with Memorystore:
- Set REDIS_HOST to the Memorystore instance IP
- Set REDIS_PASSWORD if authentication is enabled
- Ensure VPC connector is configured for Cloud Run
"""
import json
from datetime import timedelta
from typing import List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from gradewise.core.config import settings
from gradewise.core.errors import TransactionConflictError
from gradewise.core.logging import get_logger
from gradewise.domain.conversation import Conversation
from gradewise.domain.documents import LessonPlan, SemanticDocument
from gradewise.domain.grades import GradeRecord
from gradewise.infrastructure.base import (
    AggregateDoc,
    AggregateUpdate,
    ConversationStore,
    DocumentStore,
    apply_update,
)

logger = get_logger(__name__)

# Redis connection pool (lazy initialization)
_redis_pool: Optional[aioredis.ConnectionPool] = None
_redis_client: Optional[aioredis.Redis] = None


def get_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
    password: Optional[str] = None,
) -> aioredis.Redis:
    """Get or create the shared async Redis client.

    Uses settings from environment variables if not explicitly provided.
    The pool connects lazily; use ``DocumentStore.ping()`` to check
    reachability.
    """
    global _redis_pool, _redis_client

    if _redis_client is None:
        host = host or settings.redis_host
        port = port or settings.redis_port
        db = db if db is not None else settings.redis_db
        password = password or settings.redis_password

        logger.info(f"Initializing Redis connection pool: {host}:{port}")
        _redis_pool = aioredis.ConnectionPool(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
            max_connections=50,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        _redis_client = aioredis.Redis(connection_pool=_redis_pool)

    return _redis_client


def _dumps(value) -> str:
    return json.dumps(value, default=str)


class RedisDocumentStore(DocumentStore):
    """DocumentStore over Redis.

    Key layout (all under ``key_prefix``):
        aggregate:<key>           JSON aggregate document
        docs:<tenant_id>          hash of semantic document id -> JSON
        grade:<grade_id>          JSON grade record
        class_grades:<class_id>   set of grade ids
        lesson_plan:<plan_id>     JSON lesson plan
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        key_prefix: str = "gradewise:",
        max_retries: Optional[int] = None,
    ):
        self.redis = redis_client or get_redis_client()
        self.key_prefix = key_prefix
        self.max_retries = max_retries or settings.aggregate_max_retries

    def _make_key(self, *parts: str) -> str:
        return self.key_prefix + ":".join(parts)

    async def get_aggregate(self, key: str) -> Optional[AggregateDoc]:
        raw = await self.redis.get(self._make_key("aggregate", key))
        return json.loads(raw) if raw else None

    async def transact_aggregate(self, key: str, fn: AggregateUpdate) -> AggregateDoc:
        redis_key = self._make_key("aggregate", key)

        async with self.redis.pipeline(transaction=True) as pipe:
            for attempt in range(1, self.max_retries + 1):
                try:
                    await pipe.watch(redis_key)
                    raw = await pipe.get(redis_key)
                    current = json.loads(raw) if raw else None
                    updated = await apply_update(fn, current)

                    pipe.multi()
                    pipe.set(redis_key, _dumps(updated))
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug(f"Aggregate {key} changed during transaction, retrying (attempt {attempt})")

        raise TransactionConflictError(key, self.max_retries)

    async def put_semantic_document(self, doc: SemanticDocument) -> None:
        await self.redis.hset(
            self._make_key("docs", doc.tenant_id),
            doc.id,
            doc.model_dump_json(),
        )

    async def query_documents_by_tenant(self, tenant_id: str) -> List[SemanticDocument]:
        raw_docs = await self.redis.hgetall(self._make_key("docs", tenant_id))
        documents = [SemanticDocument.model_validate_json(raw) for raw in raw_docs.values()]
        # Hash field order is not stable; order by creation for deterministic ranking
        return sorted(documents, key=lambda d: (d.created_at, d.id))

    async def put_grade(self, grade: GradeRecord) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._make_key("grade", grade.id), grade.model_dump_json())
            pipe.sadd(self._make_key("class_grades", grade.class_id), grade.id)
            await pipe.execute()

    async def get_grade(self, grade_id: str) -> Optional[GradeRecord]:
        raw = await self.redis.get(self._make_key("grade", grade_id))
        return GradeRecord.model_validate_json(raw) if raw else None

    async def list_grades(
        self,
        class_id: str,
        student_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[GradeRecord]:
        grade_ids = await self.redis.smembers(self._make_key("class_grades", class_id))
        if not grade_ids:
            return []

        raw_grades = await self.redis.mget([self._make_key("grade", gid) for gid in sorted(grade_ids)])
        grades = [GradeRecord.model_validate_json(raw) for raw in raw_grades if raw]
        grades = [
            g for g in grades
            if (student_id is None or g.student_id == student_id)
            and (include_deleted or not g.deleted)
        ]
        return sorted(grades, key=lambda g: g.graded_at)

    async def put_lesson_plan(self, plan: LessonPlan) -> None:
        await self.redis.set(self._make_key("lesson_plan", plan.id), plan.model_dump_json())

    async def get_lesson_plan(self, tenant_id: str, plan_id: str) -> Optional[LessonPlan]:
        raw = await self.redis.get(self._make_key("lesson_plan", plan_id))
        if not raw:
            return None
        plan = LessonPlan.model_validate_json(raw)
        return plan if plan.tenant_id == tenant_id else None

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False


class RedisConversationStore(ConversationStore):
    """Conversation storage with automatic TTL.

    Each conversation is a JSON blob refreshed on every write; a per-tenant
    sorted set scored by ``updated_at`` keeps listing order.

    Example:
        >>> store = RedisConversationStore(ttl_days=30)
        >>> conversation = await store.create("teacher_42")
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        ttl_days: Optional[int] = None,
        key_prefix: str = "gradewise:conversation:",
    ):
        self.redis = redis_client or get_redis_client()
        self.ttl = timedelta(days=ttl_days or settings.conversation_ttl_days)
        self.key_prefix = key_prefix

        logger.info(f"RedisConversationStore initialized with {self.ttl.days} day TTL")

    def _make_key(self, tenant_id: str, conversation_id: str) -> str:
        return f"{self.key_prefix}{tenant_id}:{conversation_id}"

    def _index_key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}{tenant_id}"

    async def get(self, tenant_id: str, conversation_id: str) -> Optional[Conversation]:
        raw = await self.redis.get(self._make_key(tenant_id, conversation_id))
        if not raw:
            return None
        conversation = Conversation.model_validate_json(raw)
        return None if conversation.deleted else conversation

    async def list_for_tenant(self, tenant_id: str) -> List[Conversation]:
        ids = await self.redis.zrevrange(self._index_key(tenant_id), 0, -1)
        if not ids:
            return []

        raw_items = await self.redis.mget([self._make_key(tenant_id, cid) for cid in ids])
        conversations = []
        for cid, raw in zip(ids, raw_items):
            if not raw:
                # Expired blob; drop the stale index entry
                await self.redis.zrem(self._index_key(tenant_id), cid)
                continue
            conversation = Conversation.model_validate_json(raw)
            if not conversation.deleted:
                conversations.append(conversation)
        return conversations

    async def save(self, conversation: Conversation) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.setex(
                self._make_key(conversation.tenant_id, conversation.id),
                self.ttl,
                conversation.model_dump_json(),
            )
            if conversation.deleted:
                pipe.zrem(self._index_key(conversation.tenant_id), conversation.id)
            else:
                pipe.zadd(
                    self._index_key(conversation.tenant_id),
                    {conversation.id: conversation.updated_at.timestamp()},
                )
            await pipe.execute()
