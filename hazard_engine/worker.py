from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

from pydantic import ValidationError

from hazard_engine.models import ObserverState, QueryResult
from hazard_engine.retrieval import RetrievalEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryRequest:
    observer: ObserverState
    request_id: str
    generation: int


@dataclass(frozen=True)
class QueryResponse:
    request_id: str
    generation: int
    result: QueryResult


def _empty_result(error: str) -> QueryResult:
    return QueryResult(
        topk=[],
        features={"type": "FeatureCollection", "features": []},
        diagnostics=None,
        error=error,
    )


class EngineWorker:
    """Runs one query at a time for a moving observer.

    Every submit bumps the generation and cancels the query in flight, so
    only the freshest observer state produces a response. Responses are
    published on ``responses``.
    """

    def __init__(self, engine: RetrievalEngine, max_pending: int = 8) -> None:
        self.engine = engine
        self.responses: asyncio.Queue[QueryResponse] = asyncio.Queue(maxsize=max_pending)
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._running = True
        logger.info("Engine worker started")

    def submit(self, observer: ObserverState | dict, request_id: str | None = None) -> int:
        """Queue a fresh observer state, replacing any query still computing.

        Raises pydantic.ValidationError for a malformed observer state.
        """
        if not self._running:
            raise RuntimeError("EngineWorker is not running")
        if isinstance(observer, ObserverState):
            observer = observer.model_copy(deep=True)
        else:
            observer = ObserverState.model_validate(observer)

        self._generation += 1
        request = QueryRequest(
            observer=observer,
            request_id=request_id or uuid.uuid4().hex[:12],
            generation=self._generation,
        )
        if self.busy:
            logger.debug("Replacing in-flight query with generation %d", request.generation)
            self._task.cancel()
        self._task = asyncio.create_task(self._run(request))
        return request.generation

    async def _run(self, request: QueryRequest) -> None:
        try:
            result = await self.engine.query(request.observer)
        except asyncio.CancelledError:
            logger.debug("Query generation %d cancelled", request.generation)
            raise
        except (ValidationError, ValueError, LookupError, OSError) as e:
            logger.warning("Query generation %d failed: %s", request.generation, e)
            result = _empty_result(f"query failed: {type(e).__name__}")
        except Exception as e:
            logger.exception("Query generation %d failed unexpectedly", request.generation)
            result = _empty_result(f"query failed: {type(e).__name__}")

        if request.generation != self._generation:
            logger.debug("Dropping stale result for generation %d", request.generation)
            return

        if result.diagnostics is not None:
            result.diagnostics.generation = request.generation
        response = QueryResponse(
            request_id=request.request_id,
            generation=request.generation,
            result=result,
        )
        if self.responses.full():
            # consumer fell behind; the oldest answer is the least useful
            self.responses.get_nowait()
        self.responses.put_nowait(response)

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Engine worker stopped")
