# ============================================================================
# LRO - Long-running operation poller
# ============================================================================
#
# SUBMITTED   -> 200/201/204                       -> DONE
# SUBMITTED   -> 202 + operation location          -> IN_PROGRESS
# SUBMITTED   -> 404 / 409                         -> DONE (already in target state)
# SUBMITTED   -> other 4xx/5xx                     -> FAILED
# IN_PROGRESS -> poll 2xx, Succeeded or no status  -> DONE
# IN_PROGRESS -> poll 2xx, status Failed/Canceled  -> FAILED
# IN_PROGRESS -> poll 2xx, any other status        -> IN_PROGRESS
# IN_PROGRESS -> poll 202                          -> IN_PROGRESS
# IN_PROGRESS -> poll 4xx/5xx                      -> FAILED
# IN_PROGRESS -> max_attempts polls exhausted      -> TIMED_OUT
# ============================================================================

import enum
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import requests

from .errors import AuthError, PpvnetError, error_for_status
from .rest import ApiClient, ApiRequest

log = logging.getLogger(__name__)

LOCATION_HEADERS = ("Azure-AsyncOperation", "Operation-Location", "Location")
SUCCEEDED_BODY_STATES = {"succeeded", "completed"}
FAILED_BODY_STATES = {"failed", "canceled", "cancelled"}
ALREADY_DONE_STATUSES = {404: "already absent", 409: "already in target state"}


class LroStatus(enum.Enum):
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    IN_PROGRESS = "in_progress"


@dataclass
class LroResult:
    status: LroStatus
    operation: str
    http_status: Optional[int] = None
    detail: str = ""
    error: Optional[BaseException] = None
    polls: int = 0
    elapsed: float = 0.0
    already: bool = False

    @property
    def done(self) -> bool:
        return self.status is LroStatus.DONE

    def summary(self) -> str:
        parts = [f"{self.operation}: {self.status.value}"]
        if self.http_status is not None:
            parts.append(f"HTTP {self.http_status}")
        if self.detail:
            parts.append(self.detail)
        return " | ".join(parts)


def operation_location(response: requests.Response) -> Optional[str]:
    for header in LOCATION_HEADERS:
        value = response.headers.get(header)
        if value:
            return value
    return None


def _body_state(response: requests.Response) -> str:
    if not response.content:
        return ""
    try:
        body = response.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    state = body.get("status") or (body.get("properties") or {}).get("provisioningState") or ""
    return str(state)


class LroPoller:
    """
    Submits one mutating request and waits for it to reach a terminal state.

    Failures are returned as LroResult values, never raised, so a caller can
    decide whether to continue. Only credential failures raised while
    building the request headers propagate.
    """

    def __init__(
        self,
        client: ApiClient,
        poll_interval: float,
        max_attempts: int,
        jitter: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.jitter = jitter
        self._sleep = sleep
        self._clock = clock

    def _wait(self) -> None:
        delay = self.poll_interval
        if self.jitter:
            delay += random.uniform(0, self.jitter * self.poll_interval)
        self._sleep(delay)

    def submit_and_wait(self, request: ApiRequest) -> LroResult:
        name = request.describe()
        start = self._clock()
        try:
            response = self.client.send(request)
        except requests.RequestException as e:
            log.error("%s: request failed: %s", name, e)
            return LroResult(LroStatus.FAILED, name, detail=f"network error: {e}", error=e)

        status = response.status_code
        if status in ALREADY_DONE_STATUSES:
            detail = ALREADY_DONE_STATUSES[status]
            log.info("%s: HTTP %d, %s", name, status, detail)
            return LroResult(LroStatus.DONE, name, http_status=status, detail=detail, already=True)

        if status != 202 and 200 <= status < 300:
            log.info("%s: completed synchronously (HTTP %d)", name, status)
            return LroResult(LroStatus.DONE, name, http_status=status, elapsed=self._clock() - start)

        if status != 202:
            error = error_for_status(name, response.url or request.url, status, response.text or "")
            log.error("%s: HTTP %d: %s", name, status, (response.text or "")[:500])
            return LroResult(LroStatus.FAILED, name, http_status=status, detail=str(error), error=error)

        location = operation_location(response)
        if not location:
            log.warning("%s: accepted (HTTP 202) without an operation location", name)
            return LroResult(LroStatus.DONE, name, http_status=202,
                             detail="accepted, completion not observable")

        log.info("%s: accepted (HTTP 202), polling %s", name, location)
        poll = ApiRequest("GET", location, operation=f"{name} (poll)")

        def check() -> Tuple[LroStatus, str, Optional[int]]:
            r = self.client.send(poll)
            if r.status_code == 202:
                return LroStatus.IN_PROGRESS, "in progress", 202
            if 200 <= r.status_code < 300:
                state = _body_state(r)
                if not state or state.lower() in SUCCEEDED_BODY_STATES:
                    return LroStatus.DONE, state, r.status_code
                if state.lower() in FAILED_BODY_STATES:
                    return LroStatus.FAILED, f"operation reported {state}", r.status_code
                return LroStatus.IN_PROGRESS, state, r.status_code
            return LroStatus.FAILED, f"poll returned HTTP {r.status_code}: {(r.text or '')[:500]}", r.status_code

        return self._loop(name, check, start)

    def wait_for(self, operation: str, check: Callable[[], Tuple[LroStatus, str]]) -> LroResult:
        """Polls an arbitrary check (e.g. provisioning state) with the same bounds and logging."""
        start = self._clock()

        def wrapped() -> Tuple[LroStatus, str, Optional[int]]:
            status, detail = check()
            return status, detail, None

        return self._loop(operation, wrapped, start)

    def _loop(self, name: str, check, start: float) -> LroResult:
        last_http = None
        last_detail = ""
        for attempt in range(1, self.max_attempts + 1):
            self._wait()
            elapsed = self._clock() - start
            try:
                status, detail, last_http = check()
            except AuthError:
                raise
            except (requests.RequestException, PpvnetError) as e:
                log.error("%s: poll %d/%d failed after %.0fs: %s", name, attempt, self.max_attempts, elapsed, e)
                return LroResult(LroStatus.FAILED, name, detail=str(e), error=e, polls=attempt, elapsed=elapsed)

            last_detail = detail
            log.info("%s: poll %d/%d, %.0fs elapsed: %s", name, attempt, self.max_attempts, elapsed,
                     detail or status.value)
            if status is LroStatus.DONE:
                return LroResult(LroStatus.DONE, name, http_status=last_http, detail=detail,
                                 polls=attempt, elapsed=elapsed)
            if status is LroStatus.FAILED:
                return LroResult(LroStatus.FAILED, name, http_status=last_http, detail=detail,
                                 polls=attempt, elapsed=elapsed)

        elapsed = self._clock() - start
        log.warning("%s: no terminal state after %d polls (%.0fs); it may still complete server-side",
                    name, self.max_attempts, elapsed)
        return LroResult(LroStatus.TIMED_OUT, name, http_status=last_http,
                         detail=f"timed out after {elapsed:.0f}s, last state: {last_detail or 'unknown'}; "
                                "the operation may still complete",
                         polls=self.max_attempts, elapsed=elapsed)


def submit_and_wait(client: ApiClient, request: ApiRequest, poll_interval: float, max_attempts: int,
                    **kwargs) -> LroResult:
    return LroPoller(client, poll_interval, max_attempts, **kwargs).submit_and_wait(request)
