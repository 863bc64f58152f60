"""
Bounded-concurrency transcription request pool.

At most ``max_concurrent`` service calls run at once. Chunks arriving while
the pool is full wait in a FIFO retry queue. A timed-out or cancelled request
resolves its future to None straight away but keeps its slot until the
service call actually returns; only then is the oldest waiting chunk admitted.
Each admitted request owns a cancellation handle and a timeout timer, kept in
a registry that only this class touches.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .content_filter import DEFAULT_CONFIDENCE, ContentFilter
from .errors import TranscriptionTimeout
from .types import AudioChunk, TranscriptSegment, TranscriptionResult

logger = logging.getLogger(__name__)

MAX_CONCURRENT_REQUESTS = 4
REQUEST_TIMEOUT = 180.0
MIN_PAYLOAD_BYTES = 4000  # smaller payloads cannot hold usable audio


class CancellationHandle:
    """Per-request abort flag."""

    def __init__(self, chunk_id: str):
        self.chunk_id = chunk_id
        self.reason: Optional[str] = None
        self._event = threading.Event()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class _Request:
    __slots__ = ("chunk", "future", "handle", "timer", "resolved")

    def __init__(self, chunk: AudioChunk, future: Future, handle: CancellationHandle, timer: threading.Timer):
        self.chunk = chunk
        self.future = future
        self.handle = handle
        self.timer = timer
        # Set under the pool lock by whoever resolves the future first
        self.resolved = False


class TranscriptionOrchestrator:
    """Admits chunks to the transcription service under a concurrency bound."""

    def __init__(
        self,
        client,
        content_filter: Optional[ContentFilter] = None,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
        request_timeout: float = REQUEST_TIMEOUT,
        min_payload_bytes: int = MIN_PAYLOAD_BYTES,
        language: str = "en",
        on_error: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            client: Object with ``transcribe(payload, language) -> TranscriptionResult``.
            content_filter: Pre/post quality gates. A default filter is used if None.
            max_concurrent: Bound on simultaneous service calls.
            request_timeout: Seconds before an admitted request cancels itself.
            min_payload_bytes: Payloads below this are rejected without a slot.
            language: Language hint sent with every request.
            on_error: Receives one user-facing message per hard service failure.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.client = client
        self.content_filter = content_filter or ContentFilter()
        self.max_concurrent = max_concurrent
        self.request_timeout = request_timeout
        self.min_payload_bytes = min_payload_bytes
        self.language = language
        self.on_error = on_error

        self._pending: Dict[str, _Request] = {}
        self._queue: Deque[Tuple[AudioChunk, Future]] = deque()
        self._queued_ids: Set[str] = set()
        self._lock = threading.Lock()
        self._closed = False

        self.last_error: Optional[str] = None
        self.max_in_flight_observed = 0
        self.stats = {
            "submitted": 0,
            "admitted": 0,
            "queued": 0,
            "rejected_small": 0,
            "rejected_silent": 0,
            "rejected_quality": 0,
            "segments": 0,
            "failed": 0,
            "timed_out": 0,
            "cancelled": 0,
        }

    @property
    def in_flight(self) -> int:
        """Occupied slots, including aborted calls that have not returned yet."""
        with self._lock:
            return len(self._pending)

    @property
    def queued(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def pending_count(self) -> int:
        """Chunks still waiting for a result."""
        with self._lock:
            unresolved = sum(1 for request in self._pending.values() if not request.resolved)
            return unresolved + len(self._queue)

    def in_flight_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def queued_ids(self) -> List[str]:
        with self._lock:
            return [chunk.id for chunk, _ in self._queue]

    def _count(self, key: str) -> None:
        with self._lock:
            self.stats[key] += 1

    def submit(self, chunk: AudioChunk) -> "Future[Optional[TranscriptSegment]]":
        """Hand a chunk over. Returns at once; the future resolves to a segment or None."""
        future: Future = Future()
        self._count("submitted")

        if self._closed:
            logger.debug(f"Orchestrator closed, dropping chunk {chunk.id}")
            future.set_result(None)
            return future

        if chunk.size < self.min_payload_bytes:
            logger.debug(
                f"Skipping chunk {chunk.id} - too small ({chunk.size} bytes, "
                f"min {self.min_payload_bytes})"
            )
            self._count("rejected_small")
            future.set_result(None)
            return future

        if not self.content_filter.should_transcribe(chunk):
            self._count("rejected_silent")
            future.set_result(None)
            return future

        with self._lock:
            if self._closed:
                logger.debug(f"Orchestrator closed, dropping chunk {chunk.id}")
                future.set_result(None)
                return future

            if chunk.id in self._pending or chunk.id in self._queued_ids:
                logger.warning(f"Chunk {chunk.id} already submitted, ignoring duplicate")
                future.set_result(None)
                return future

            if len(self._pending) >= self.max_concurrent:
                self._queue.append((chunk, future))
                self._queued_ids.add(chunk.id)
                self.stats["queued"] += 1
                logger.debug(
                    f"Rate limit - queueing chunk {chunk.id} "
                    f"({len(self._pending)}/{self.max_concurrent} in flight, "
                    f"{len(self._queue)} queued)"
                )
                return future

            request = self._admit_locked(chunk, future)

        self._launch(request)
        return future

    def _admit_locked(self, chunk: AudioChunk, future: Future) -> _Request:
        handle = CancellationHandle(chunk.id)
        timer = threading.Timer(self.request_timeout, self._on_timeout, args=(chunk.id,))
        timer.daemon = True
        request = _Request(chunk, future, handle, timer)
        self._pending[chunk.id] = request
        self.stats["admitted"] += 1
        self.max_in_flight_observed = max(self.max_in_flight_observed, len(self._pending))
        return request

    def _launch(self, request: _Request) -> None:
        if request.handle.cancelled:
            # Cancelled between admission and launch; give the slot back
            self._complete(request, None)
            return
        request.timer.start()
        thread = threading.Thread(
            target=self._run_request,
            args=(request,),
            name=f"transcribe-{request.chunk.index}",
            daemon=True,
        )
        thread.start()

    def _run_request(self, request: _Request) -> None:
        chunk = request.chunk
        handle = request.handle
        segment = None
        try:
            if handle.cancelled:
                return
            result = self.client.transcribe(chunk.payload, self.language)
            if handle.cancelled:
                logger.debug(f"Chunk {chunk.id} returned after abort ({handle.reason}), result dropped")
            else:
                segment = self._build_segment(chunk, result)
        except TranscriptionTimeout as e:
            logger.debug(f"Chunk {chunk.id} timed out: {e}")
            if not handle.cancelled:
                self._count("timed_out")
        except Exception as e:
            if handle.cancelled:
                logger.debug(f"Chunk {chunk.id} aborted ({handle.reason}): {e}")
            else:
                self._report_error(chunk, e)
        finally:
            self._complete(request, segment)

    def _build_segment(self, chunk: AudioChunk, result: TranscriptionResult) -> Optional[TranscriptSegment]:
        text = (result.text or "").strip()
        if not text:
            return None

        confidence = result.confidence if result.confidence is not None else DEFAULT_CONFIDENCE
        if self.content_filter.check_result(text, confidence):
            self._count("rejected_quality")
            return None

        self._count("segments")
        return TranscriptSegment(
            id=chunk.id,
            text=text,
            start_time_ms=chunk.start_time_ms,
            end_time_ms=chunk.end_time_ms,
            confidence=max(0.0, min(1.0, float(confidence))),
            confirmed=False,
        )

    def _report_error(self, chunk: AudioChunk, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"Transcription failed for chunk {chunk.id}: {message}")
        self._count("failed")
        self.last_error = message
        if self.on_error:
            try:
                self.on_error(message)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def _complete(self, request: _Request, segment: Optional[TranscriptSegment]) -> None:
        """Release the slot of a request whose service call has returned."""
        with self._lock:
            if self._pending.get(request.chunk.id) is not request:
                return
            del self._pending[request.chunk.id]
            request.timer.cancel()
            admitted = self._drain_locked()
            resolve = self._claim_locked(request)

        for queued_request in admitted:
            self._launch(queued_request)
        if resolve:
            request.future.set_result(segment)

    @staticmethod
    def _claim_locked(request: _Request) -> bool:
        """True for the first caller; the future is theirs to resolve."""
        if request.resolved:
            return False
        request.resolved = True
        return True

    def _drain_locked(self) -> List[_Request]:
        admitted = []
        while self._queue and len(self._pending) < self.max_concurrent:
            chunk, future = self._queue.popleft()
            self._queued_ids.discard(chunk.id)
            logger.debug(f"Processing queued chunk {chunk.id} ({len(self._queue)} remaining)")
            admitted.append(self._admit_locked(chunk, future))
        return admitted

    def _on_timeout(self, chunk_id: str) -> None:
        with self._lock:
            request = self._pending.get(chunk_id)
            if request is None or not self._claim_locked(request):
                return
            request.handle.cancel("timeout")
            self.stats["timed_out"] += 1
        logger.debug(f"Chunk {chunk_id} exceeded {self.request_timeout:.0f}s, aborting")
        # The slot stays taken until the call returns
        request.future.set_result(None)

    def cancel_all(self) -> int:
        """
        Abort every in-flight and queued request; all resolve to None.

        Queued chunks are dropped. In-flight requests resolve now but hold
        their slot until the underlying service call returns, so work submitted
        afterwards still respects ``max_concurrent``.
        """
        with self._lock:
            requests = [r for r in self._pending.values() if self._claim_locked(r)]
            queued = list(self._queue)
            self._queue.clear()
            self._queued_ids.clear()
            for request in requests:
                request.handle.cancel("cancelled")
                request.timer.cancel()
            self.stats["cancelled"] += len(requests) + len(queued)

        for _, future in queued:
            future.set_result(None)
        for request in requests:
            request.future.set_result(None)

        if requests or queued:
            logger.info(f"Cancelled {len(requests)} in-flight and {len(queued)} queued requests")
        return len(requests) + len(queued)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, close_client: bool = True) -> int:
        """Cancel everything and refuse further submissions. Returns the number cancelled."""
        with self._lock:
            self._closed = True
        cancelled = self.cancel_all()
        close = getattr(self.client, "close", None)
        if close_client and callable(close):
            try:
                close()
            except Exception as e:
                logger.error(f"Error closing transcription client: {e}")
        return cancelled

    def get_stats(self) -> Dict:
        with self._lock:
            stats = dict(self.stats)
            stats.update(
                in_flight=len(self._pending),
                queued_now=len(self._queue),
                max_in_flight_observed=self.max_in_flight_observed,
            )
        return stats
