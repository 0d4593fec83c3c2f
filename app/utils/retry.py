import asyncio
import structlog
from functools import wraps
from datetime import datetime, timezone

logger = structlog.get_logger()


class CircuitBreakerOpenException(Exception):
    pass


class CircuitBreaker:
    """Fails fast once an upstream service keeps erroring.

    CLOSED lets calls through and counts failures. After `failure_threshold`
    failures the breaker goes OPEN and rejects calls until `reset_timeout`
    seconds have passed; the next call then runs HALF_OPEN and either closes
    the breaker or reopens it.
    """

    def __init__(self, failure_threshold=5, reset_timeout=60, service="CRM"):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.service = service
        self.failures = 0
        self.last_failure_time = None
        self.state = "CLOSED"

    def reset(self):
        self.state = "CLOSED"
        self.failures = 0
        self.last_failure_time = None

    def _open(self):
        self.state = "OPEN"
        self.last_failure_time = datetime.now(timezone.utc)
        logger.warning("Circuit Breaker OPEN", event_type="circuit_breaker_state_change", state=self.state, service=self.service)

    def _half_open(self):
        self.state = "HALF_OPEN"
        logger.info("Circuit Breaker HALF-OPEN", event_type="circuit_breaker_state_change", state=self.state, service=self.service)

    def _close(self):
        self.reset()
        logger.info("Circuit Breaker CLOSED", event_type="circuit_breaker_state_change", state=self.state, service=self.service)

    def _reset_timeout_elapsed(self) -> bool:
        elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
        return elapsed > self.reset_timeout

    def before_call(self):
        if self.state == "OPEN":
            if self._reset_timeout_elapsed():
                self._half_open()
            else:
                logger.warning("Circuit Breaker OPEN, blocking call", event_type="circuit_breaker_blocked", service=self.service)
                raise CircuitBreakerOpenException(f"Circuit breaker for {self.service} is open")

    def record_success(self):
        if self.state == "HALF_OPEN":
            self._close()
        else:
            self.failures = 0

    def record_failure(self, exc: Exception):
        self.failures += 1
        self.last_failure_time = datetime.now(timezone.utc)
        logger.warning("Circuit Breaker failure recorded", event_type="circuit_breaker_failure", failures=self.failures, state=self.state, service=self.service, error_type=type(exc).__name__)
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            self._open()

    def __call__(self, func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            self.before_call()
            try:
                result = await func(*args, **kwargs)
            except CircuitBreakerOpenException:
                raise
            except Exception as e:
                self.record_failure(e)
                raise
            self.record_success()
            return result
        return wrapper


def async_retry(tries=3, delay=1, backoff=2, exceptions=(Exception,), circuit_breaker: CircuitBreaker = None):
    def deco(func):
        guarded = circuit_breaker(func) if circuit_breaker else func

        @wraps(func)
        async def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return await guarded(*args, **kwargs)
                except CircuitBreakerOpenException:
                    raise
                except exceptions as e:
                    logger.warning("Exception during retry", event_type="retry_exception", error=str(e), delay=mdelay, error_type=type(e).__name__, function=func.__name__)
                    await asyncio.sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff

            return await guarded(*args, **kwargs)  # Last attempt
        return f_retry
    return deco
