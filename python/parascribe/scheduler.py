from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable

logger = logging.getLogger(__name__)

PRIORITIES = ("high", "normal", "low")

REQUEST_WINDOW_SEC = 60.0
TOKEN_WINDOW_SEC = 60.0
BURST_WINDOW_SEC = 10.0
MINUTE_WAIT_MARGIN_SEC = 0.5
BURST_WAIT_MARGIN_SEC = 0.1
CONCURRENCY_RECHECK_SEC = 1.0

SUCCESS_RATE_ALPHA = 0.05
LATENCY_ALPHA = 0.1

# Failure kinds.
RATE_LIMITED = "rate_limited"
TRANSIENT = "transient"
FATAL = "fatal"

# Request lifecycle.
QUEUED = "queued"
DISPATCHED = "dispatched"
RETRYING = "retrying"
SUCCEEDED = "succeeded"
FAILED = "failed"

RATE_LIMIT_CODES = {"rate_limit_exceeded", "insufficient_quota"}
RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "quota exceeded")
TRANSIENT_CODES = {"econnreset", "econnrefused", "enotfound", "etimedout"}
TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "etimedout",
    "econnreset",
    "econnrefused",
    "enotfound",
    "connection error",
    "connection reset",
    "connection refused",
    "overloaded",
    "temporarily unavailable",
)


class SchedulerStoppedError(RuntimeError):
    pass


class RateLimitExhaustedError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class RateLimits:
    requests_per_minute: int = 50
    tokens_per_minute: int = 150_000
    requests_per_day: int = 1000
    max_concurrent_requests: int = 5
    burst_limit: int = 10

    def __post_init__(self) -> None:
        for name in (
            "requests_per_minute",
            "tokens_per_minute",
            "requests_per_day",
            "max_concurrent_requests",
            "burst_limit",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass(slots=True, frozen=True)
class PacingPolicy:
    initial_delay_sec: float = 1.0
    min_delay_sec: float = 0.2
    max_delay_sec: float = 5.0
    adjust_interval_sec: float = 30.0
    rate_limit_delay_cap_sec: float = 10.0


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    rate_limit_base_sec: float = 2.0
    rate_limit_cap_sec: float = 60.0
    transient_step_sec: float = 1.0
    jitter_sec: float = 1.0

    def rate_limit_backoff(self, retry_count: int, rng: random.Random) -> float:
        exponential = min(self.rate_limit_cap_sec, self.rate_limit_base_sec * (2**retry_count))
        return exponential + rng.uniform(0.0, self.jitter_sec)

    def transient_backoff(self, retry_count: int, rng: random.Random) -> float:
        return self.transient_step_sec * retry_count + rng.uniform(0.0, self.jitter_sec)


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_error(exc: BaseException) -> str:
    """Sort a provider failure into rate-limited, transient or fatal."""
    status = _status_of(exc)
    code = str(getattr(exc, "code", "") or "").lower()
    message = str(exc).lower()

    if status == 429 or code in RATE_LIMIT_CODES or any(marker in message for marker in RATE_LIMIT_MARKERS):
        return RATE_LIMITED
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TRANSIENT
    if status is not None:
        return TRANSIENT if status >= 500 or status == 408 else FATAL
    if code in TRANSIENT_CODES or any(marker in message for marker in TRANSIENT_MARKERS):
        return TRANSIENT
    return FATAL


def _usage_tokens(result: Any) -> int | None:
    usage = result.get("usage") if isinstance(result, dict) else getattr(result, "usage", None)
    if not usage:
        return None
    if not isinstance(usage, dict):
        usage = {
            key: getattr(usage, key, None)
            for key in ("total_tokens", "prompt_tokens", "completion_tokens")
        }
    total = usage.get("total_tokens")
    if total is None:
        prompt = usage.get("prompt_tokens") or 0
        completion = usage.get("completion_tokens") or 0
        total = prompt + completion
    try:
        total = int(total)
    except (TypeError, ValueError):
        return None
    return total if total > 0 else None


@dataclass(slots=True)
class Reservation:
    started_at: float
    token_entry: list[float] | None = None


class SchedulerBudget:
    """Admission budget for one provider, shared by all of its workers.

    Every sliding window is pruned lazily whenever the budget is consulted.
    Dispatches are counted when they are admitted, so concurrent workers
    cannot overshoot a window between admission and completion.
    """

    def __init__(
        self,
        limits: RateLimits | None = None,
        pacing: PacingPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ):
        self.limits = limits or RateLimits()
        self.pacing = pacing or PacingPolicy()
        self._clock = clock
        self._today = today
        self._lock = threading.RLock()

        self._requests: deque[float] = deque()
        self._burst: deque[float] = deque()
        self._tokens: deque[list[float]] = deque()
        self._daily_requests = 0
        self._day = today()
        self._in_flight = 0

        self.adaptive_delay_sec = self.pacing.initial_delay_sec
        self.success_rate = 1.0
        self.average_latency_sec = 0.0
        self._last_adjustment = clock()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def _refresh(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= REQUEST_WINDOW_SEC:
            self._requests.popleft()
        while self._burst and now - self._burst[0] >= BURST_WINDOW_SEC:
            self._burst.popleft()
        while self._tokens and now - self._tokens[0][0] >= TOKEN_WINDOW_SEC:
            self._tokens.popleft()

        today = self._today()
        if today != self._day:
            self._day = today
            self._daily_requests = 0

    def _token_total(self) -> float:
        return sum(entry[1] for entry in self._tokens)

    def _seconds_until_midnight(self) -> float:
        tomorrow = datetime.combine(self._day + timedelta(days=1), datetime.min.time())
        return max(1.0, (tomorrow - datetime.now()).total_seconds())

    def _wait_locked(self, now: float) -> float:
        limits = self.limits
        if self._in_flight >= limits.max_concurrent_requests:
            return CONCURRENCY_RECHECK_SEC
        if len(self._burst) >= limits.burst_limit:
            return max(0.0, BURST_WINDOW_SEC - (now - self._burst[0])) + BURST_WAIT_MARGIN_SEC

        waits: list[float] = []
        if len(self._requests) >= limits.requests_per_minute:
            waits.append(max(0.0, REQUEST_WINDOW_SEC - (now - self._requests[0])) + MINUTE_WAIT_MARGIN_SEC)
        if self._tokens and self._token_total() >= limits.tokens_per_minute:
            waits.append(max(0.0, TOKEN_WINDOW_SEC - (now - self._tokens[0][0])) + MINUTE_WAIT_MARGIN_SEC)
        if self._daily_requests >= limits.requests_per_day:
            waits.append(self._seconds_until_midnight())
        return max(waits) if waits else 0.0

    def wait_time(self) -> float:
        """Seconds until the binding limit may clear; 0.0 when admissible."""
        with self._lock:
            now = self._clock()
            self._refresh(now)
            return self._wait_locked(now)

    def can_admit(self) -> bool:
        return self.wait_time() <= 0.0

    def reserve(self, estimated_tokens: int = 0) -> Reservation | None:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            if self._wait_locked(now) > 0.0:
                return None

            self._requests.append(now)
            self._burst.append(now)
            self._daily_requests += 1
            self._in_flight += 1
            token_entry = None
            if estimated_tokens > 0:
                token_entry = [now, float(estimated_tokens)]
                self._tokens.append(token_entry)
            return Reservation(started_at=now, token_entry=token_entry)

    def release(self, reservation: Reservation, *, success: bool, tokens_used: int | None = None) -> None:
        with self._lock:
            now = self._clock()
            self._in_flight = max(0, self._in_flight - 1)

            if tokens_used is not None:
                if reservation.token_entry is not None:
                    reservation.token_entry[1] = float(tokens_used)
                else:
                    self._tokens.append([reservation.started_at, float(tokens_used)])

            latency = now - reservation.started_at
            if latency > 0:
                self.average_latency_sec = (
                    self.average_latency_sec * (1 - LATENCY_ALPHA) + latency * LATENCY_ALPHA
                )
            self.success_rate = self.success_rate * (1 - SUCCESS_RATE_ALPHA) + (
                SUCCESS_RATE_ALPHA if success else 0.0
            )

            if now - self._last_adjustment > self.pacing.adjust_interval_sec:
                self._adjust_delay()
                self._last_adjustment = now

    def abandon(self, reservation: Reservation) -> None:
        with self._lock:
            self._in_flight = max(0, self._in_flight - 1)

    def _adjust_delay(self) -> None:
        previous = self.adaptive_delay_sec
        if self.success_rate > 0.95 and self.average_latency_sec < 5.0:
            self.adaptive_delay_sec = max(self.pacing.min_delay_sec, previous * 0.9)
        elif self.success_rate < 0.9 or self.average_latency_sec > 10.0:
            self.adaptive_delay_sec = min(self.pacing.max_delay_sec, previous * 1.2)
        if self.adaptive_delay_sec != previous:
            logger.info(
                "Adjusted adaptive delay %.3fs -> %.3fs (success %.0f%%, avg latency %.2fs)",
                previous,
                self.adaptive_delay_sec,
                self.success_rate * 100,
                self.average_latency_sec,
            )

    def penalize_rate_limit(self) -> None:
        with self._lock:
            self.adaptive_delay_sec = min(
                self.pacing.rate_limit_delay_cap_sec,
                max(self.adaptive_delay_sec, self.pacing.min_delay_sec) * 2,
            )

    def pacing_delay(self) -> float:
        with self._lock:
            delay = self.adaptive_delay_sec
            if self.success_rate < 0.9:
                delay *= 1.5
            elif self.success_rate > 0.95:
                delay *= 0.8
            pressure = self._in_flight / self.limits.max_concurrent_requests
            delay *= 1 + pressure * 0.5
            return max(self.pacing.min_delay_sec, min(self.pacing.max_delay_sec, delay))

    def update_limits(self, **changes: int) -> RateLimits:
        with self._lock:
            self.limits = replace(self.limits, **changes)
            return self.limits

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            limits = self.limits
            return {
                "active_requests": self._in_flight,
                "max_concurrent": limits.max_concurrent_requests,
                "usage": {
                    "requests_per_minute": [len(self._requests), limits.requests_per_minute],
                    "tokens_per_minute": [int(self._token_total()), limits.tokens_per_minute],
                    "burst": [len(self._burst), limits.burst_limit],
                    "daily_requests": [self._daily_requests, limits.requests_per_day],
                },
                "success_rate": round(self.success_rate, 4),
                "average_latency_sec": round(self.average_latency_sec, 3),
                "adaptive_delay_sec": round(self.adaptive_delay_sec, 3),
                "wait_time_sec": round(self._wait_locked(now), 3),
            }


@dataclass(slots=True, eq=False)
class TranscriptionRequest:
    provider: str
    request_fn: Callable[[], Any]
    priority: str = "normal"
    max_retries: int = 3
    estimated_tokens: int = 0
    retry_count: int = 0
    state: str = QUEUED
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    future: Future = field(default_factory=Future)
    backoff_delays: list[float] = field(default_factory=list)


class _ProviderLane:
    def __init__(self, name: str, budget: SchedulerBudget):
        self.name = name
        self.budget = budget
        self.queues: dict[str, deque[TranscriptionRequest]] = {p: deque() for p in PRIORITIES}
        # (due, seq, request, target queue)
        self.retries: list[tuple[float, int, TranscriptionRequest, str]] = []
        self.cond = threading.Condition()
        self.threads: list[threading.Thread] = []

    def queued(self) -> int:
        return sum(len(q) for q in self.queues.values())

    def drain(self) -> list[TranscriptionRequest]:
        pending: list[TranscriptionRequest] = []
        for queue in self.queues.values():
            pending.extend(queue)
            queue.clear()
        pending.extend(item[2] for item in self.retries)
        self.retries.clear()
        return pending


def _settle_exception(future: Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)


class RateLimitedScheduler:
    """Admission-controlled dispatcher with one worker pool per provider.

    ``queue_request`` returns a ``concurrent.futures.Future`` that resolves
    with whatever ``request_fn`` returns, or fails with the final error once
    the request is rejected.
    """

    def __init__(
        self,
        budgets: dict[str, SchedulerBudget],
        *,
        workers_per_provider: int = 3,
        retry_policy: RetryPolicy | None = None,
        on_retry: Callable[[TranscriptionRequest, float, str], None] | None = None,
        rng: random.Random | None = None,
    ):
        if not budgets:
            raise ValueError("At least one provider budget is required")
        if workers_per_provider <= 0:
            raise ValueError("workers_per_provider must be positive")

        self.retry_policy = retry_policy or RetryPolicy()
        self.on_retry = on_retry
        self._rng = rng or random.Random()
        self._seq = itertools.count()
        self._stopping = False
        self._stopped = threading.Event()
        self._lanes = {name: _ProviderLane(name, budget) for name, budget in budgets.items()}

        for lane in self._lanes.values():
            for worker_id in range(workers_per_provider):
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(lane, worker_id),
                    name=f"scheduler-{lane.name}-{worker_id}",
                    daemon=True,
                )
                lane.threads.append(thread)
                thread.start()
            logger.info("Started %d workers for provider %s", workers_per_provider, lane.name)

    def __enter__(self) -> "RateLimitedScheduler":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.shutdown()

    @property
    def providers(self) -> list[str]:
        return list(self._lanes)

    def budget(self, provider: str) -> SchedulerBudget:
        return self._lane(provider).budget

    def _lane(self, provider: str) -> _ProviderLane:
        try:
            return self._lanes[provider]
        except KeyError:
            raise ValueError(f"Unknown provider: {provider!r}") from None

    def queue_request(
        self,
        provider: str,
        request_fn: Callable[[], Any],
        *,
        priority: str = "normal",
        max_retries: int = 3,
        estimated_tokens: int = 0,
    ) -> Future:
        lane = self._lane(provider)
        if priority not in PRIORITIES:
            logger.warning("Unknown priority %r, queueing as normal", priority)
            priority = "normal"

        request = TranscriptionRequest(
            provider=provider,
            request_fn=request_fn,
            priority=priority,
            max_retries=max(0, int(max_retries)),
            estimated_tokens=max(0, int(estimated_tokens)),
        )

        with lane.cond:
            if self._stopping:
                request.state = FAILED
                request.future.set_exception(SchedulerStoppedError("Scheduler is not accepting new requests"))
                return request.future
            lane.queues[priority].append(request)
            lane.cond.notify()
            logger.debug(
                "Queued %s request %s (%s). Queue lengths: high=%d, normal=%d, low=%d",
                provider,
                request.id,
                priority,
                len(lane.queues["high"]),
                len(lane.queues["normal"]),
                len(lane.queues["low"]),
            )
        return request.future

    def _promote_due_retries(self, lane: _ProviderLane, now: float) -> None:
        while lane.retries and lane.retries[0][0] <= now:
            _due, _seq, request, target = heapq.heappop(lane.retries)
            request.state = QUEUED
            lane.queues[target].appendleft(request)

    def _next_admitted(self, lane: _ProviderLane) -> tuple[TranscriptionRequest | None, Reservation | None]:
        with lane.cond:
            while True:
                if self._stopping:
                    return None, None

                now = time.monotonic()
                self._promote_due_retries(lane, now)
                next_retry = (lane.retries[0][0] - now) if lane.retries else None

                queue = next((lane.queues[p] for p in PRIORITIES if lane.queues[p]), None)
                if queue is None:
                    lane.cond.wait(next_retry)
                    continue

                request = queue[0]
                if request.future.cancelled():
                    queue.popleft()
                    continue

                reservation = lane.budget.reserve(request.estimated_tokens)
                if reservation is None:
                    wait = lane.budget.wait_time()
                    if next_retry is not None:
                        wait = min(wait, next_retry)
                    lane.cond.wait(max(0.01, wait))
                    continue

                queue.popleft()
                if not request.future.running() and not request.future.set_running_or_notify_cancel():
                    lane.budget.abandon(reservation)
                    continue
                request.state = DISPATCHED
                return request, reservation

    def _worker_loop(self, lane: _ProviderLane, worker_id: int) -> None:
        while True:
            request, reservation = self._next_admitted(lane)
            if request is None or reservation is None:
                logger.debug("Worker %s-%d stopping", lane.name, worker_id)
                return

            self._execute(lane, worker_id, request, reservation)

            delay = lane.budget.pacing_delay()
            if delay > 0:
                self._stopped.wait(delay)

    def _execute(
        self,
        lane: _ProviderLane,
        worker_id: int,
        request: TranscriptionRequest,
        reservation: Reservation,
    ) -> None:
        logger.debug("Worker %s-%d dispatching request %s", lane.name, worker_id, request.id)
        started = time.monotonic()
        try:
            result = request.request_fn()
        except Exception as exc:  # noqa: BLE001 - classified and routed below
            self._release(lane, reservation, success=False)
            logger.info("Request %s on %s failed: %s", request.id, lane.name, exc)
            self._handle_failure(lane, request, exc)
            return
        except BaseException as exc:
            # The worker thread exits, but the slot and the future must not leak.
            self._release(lane, reservation, success=False)
            self._reject(request, exc)
            raise

        self._release(lane, reservation, success=True, tokens_used=_usage_tokens(result))
        request.state = SUCCEEDED
        request.future.set_result(result)
        logger.debug(
            "Worker %s-%d completed request %s in %.2fs",
            lane.name,
            worker_id,
            request.id,
            time.monotonic() - started,
        )

    def _release(
        self,
        lane: _ProviderLane,
        reservation: Reservation,
        *,
        success: bool,
        tokens_used: int | None = None,
    ) -> None:
        lane.budget.release(reservation, success=success, tokens_used=tokens_used)
        with lane.cond:
            lane.cond.notify_all()

    def _handle_failure(self, lane: _ProviderLane, request: TranscriptionRequest, exc: Exception) -> None:
        kind = classify_error(exc)

        if kind == FATAL:
            self._reject(request, exc)
            return

        if kind == RATE_LIMITED:
            lane.budget.penalize_rate_limit()
            if request.retry_count < request.max_retries:
                delay = self.retry_policy.rate_limit_backoff(request.retry_count, self._rng)
                request.retry_count += 1
                self._schedule_retry(lane, request, delay, "high", kind)
            else:
                error = RateLimitExhaustedError(
                    f"Rate limit exceeded after {request.max_retries} retries. Please try again later."
                )
                error.__cause__ = exc
                self._reject(request, error)
            return

        if request.retry_count < request.max_retries:
            request.retry_count += 1
            delay = self.retry_policy.transient_backoff(request.retry_count, self._rng)
            self._schedule_retry(lane, request, delay, "normal", kind)
        else:
            self._reject(request, exc)

    def _schedule_retry(
        self,
        lane: _ProviderLane,
        request: TranscriptionRequest,
        delay: float,
        target: str,
        kind: str,
    ) -> None:
        with lane.cond:
            if self._stopping:
                stopped = SchedulerStoppedError("Scheduler stopped before the request could be retried")
                self._reject(request, stopped)
                return
            request.state = RETRYING
            request.backoff_delays.append(delay)
            heapq.heappush(lane.retries, (time.monotonic() + delay, next(self._seq), request, target))
            lane.cond.notify_all()

        logger.info(
            "Retrying %s request %s in %.2fs after %s failure (attempt %d/%d)",
            lane.name,
            request.id,
            delay,
            kind,
            request.retry_count,
            request.max_retries,
        )
        if self.on_retry is not None:
            self.on_retry(request, delay, kind)

    def _reject(self, request: TranscriptionRequest, exc: BaseException) -> None:
        request.state = FAILED
        logger.warning("Rejecting %s request %s: %s", request.provider, request.id, exc)
        _settle_exception(request.future, exc)

    def get_queue_status(self, provider: str) -> dict[str, Any]:
        lane = self._lane(provider)
        with lane.cond:
            queues = {p: len(lane.queues[p]) for p in PRIORITIES}
            retries_pending = len(lane.retries)
        status = lane.budget.snapshot()
        queues["total"] = sum(queues.values())
        status["queues"] = queues
        status["retries_pending"] = retries_pending
        status["can_admit"] = status["wait_time_sec"] <= 0
        status["workers"] = sum(1 for t in lane.threads if t.is_alive())
        return status

    def update_limits(self, provider: str, **limits: int) -> RateLimits:
        updated = self._lane(provider).budget.update_limits(**limits)
        logger.info("Updated %s rate limits: %s", provider, updated)
        with self._lane(provider).cond:
            self._lane(provider).cond.notify_all()
        return updated

    def clear_queues(self, provider: str | None = None) -> int:
        """Reject every request that has not been dispatched yet."""
        lanes = [self._lane(provider)] if provider else list(self._lanes.values())
        cleared = 0
        for lane in lanes:
            with lane.cond:
                pending = lane.drain()
            for request in pending:
                self._reject(request, SchedulerStoppedError("Queue cleared"))
            cleared += len(pending)
        return cleared

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work, reject everything undispatched, let in-flight calls finish."""
        self._stopping = True
        self._stopped.set()

        for lane in self._lanes.values():
            with lane.cond:
                pending = lane.drain()
                lane.cond.notify_all()
            for request in pending:
                self._reject(request, SchedulerStoppedError("Scheduler stopped before the request was dispatched"))

        if wait:
            current = threading.current_thread()
            for lane in self._lanes.values():
                for thread in lane.threads:
                    if thread is not current:
                        thread.join()
