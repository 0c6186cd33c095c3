"""
Idempotency Service
Provides shared-cache-backed replay of completed borrow/return requests
"""

from enum import Enum
from typing import Optional

import structlog

from app.config import settings
from app.models.loan_result import LoanResult
from app.services.distributed_lock import DistributedMutex

logger = structlog.get_logger(__name__)


class RequestKind(str, Enum):
    """Operation a request id belongs to. Borrow and return ids never collide."""
    borrow = "borrow"
    return_ = "return"


# Cached results
RESULT_PREFIXES = {
    RequestKind.borrow: "loan:request:",
    RequestKind.return_: "return:request:",
}

# Lock keys held while a request id is executing
LOCK_PREFIXES = {
    RequestKind.borrow: "request:lock:",
    RequestKind.return_: "return:request:lock:",
}


class IdempotencyService:
    """
    Time-bounded request_id -> LoanResult store on the shared cache.

    Only successful outcomes are stored. A failed request leaves nothing
    behind, so a corrected retry with the same id executes again.

    State per request id:
        unseen -> in progress (request lock held) -> completed (result cached until TTL)
                                                  -> failed (nothing cached)
    """

    def __init__(self, cache, mutex: DistributedMutex, ttl_seconds: Optional[int] = None):
        """
        Initialize idempotency service.

        Args:
            cache: Shared cache holding the serialized results
            mutex: Distributed mutex whose keys mark in-progress requests
            ttl_seconds: Result TTL. Defaults to settings.idempotency_ttl_seconds (1 hour).
        """
        self.cache = cache
        self.mutex = mutex
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.idempotency_ttl_seconds
        self.namespace = settings.cache_key_prefix
        self.logger = logger.bind(service="idempotency")

    def _result_key(self, kind: RequestKind, request_id: str) -> str:
        return f"{self.namespace}:{RESULT_PREFIXES[kind]}{request_id}"

    @staticmethod
    def lock_key(kind: RequestKind, request_id: str) -> str:
        """Mutex key marking request_id as in progress."""
        return f"{LOCK_PREFIXES[kind]}{request_id}"

    def get(self, kind: RequestKind, request_id: str) -> Optional[LoanResult]:
        """
        Look up the cached result of a completed request.

        Returns:
            LoanResult if cached and not expired, None otherwise
        """
        payload = self.cache.get(self._result_key(kind, request_id))

        if payload is None:
            return None

        self.logger.info("idempotency_key_found", kind=kind.value, request_id=request_id)
        return LoanResult.model_validate_json(payload)

    def put(self, kind: RequestKind, request_id: str, result: LoanResult, ttl_seconds: Optional[int] = None) -> None:
        """
        Cache the result of a completed request.

        A second put for the same id overwrites; the payload is identical
        for a correctly behaving client.
        """
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self.cache.set(self._result_key(kind, request_id), result.model_dump_json(), ttl)

        self.logger.info(
            "idempotency_key_stored",
            kind=kind.value,
            request_id=request_id,
            ttl_seconds=ttl
        )

    def in_progress(self, kind: RequestKind, request_id: str) -> bool:
        """True while another caller is executing request_id."""
        return self.mutex.exists(self.lock_key(kind, request_id))

    def wait_for_completion(self, kind: RequestKind, request_id: str, max_wait_seconds: Optional[float] = None) -> bool:
        """
        Block until the in-progress execution of request_id finishes.

        Returns:
            False if it was still running when the wait budget ran out
        """
        return self.mutex.wait_for_release(self.lock_key(kind, request_id), max_wait_seconds)
