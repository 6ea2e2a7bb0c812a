"""Sandboxed execution of scraper scripts.

Each invocation executes the compiled script into a fresh namespace
with an allow-listed ``__builtins__`` and a new ``ScriptContext``.
Nothing survives between invocations except the (immutable) compiled
code object.

Scripts run on a worker thread with their own event loop, so a script
that never yields cannot stall the host loop. An execution budget
traced on that thread stops script code once the invocation times out
or is cancelled.
"""

from __future__ import annotations

import asyncio
import inspect
import sys
import time
from collections.abc import Callable
from types import FrameType, MappingProxyType
from typing import Any

import httpx
import structlog

from scrapearr.domain.entities.plugins import ScraperDescriptor
from scrapearr.domain.entities.streams import AggregationQuery, StreamResult
from scrapearr.domain.exceptions import (
    InvocationError,
    InvocationTimeoutError,
    ScriptFaultError,
    ScriptNetworkError,
    ScriptValidationError,
)
from scrapearr.infrastructure.config.schema import SandboxConfig
from scrapearr.infrastructure.sandbox.capabilities import (
    NetworkError,
    SandboxFetch,
    ScriptContext,
)
from scrapearr.infrastructure.sandbox.output import parse_script_output
from scrapearr.infrastructure.sandbox.validation import (
    ENTRYPOINT,
    SAFE_BUILTINS,
    compile_script,
    script_digest,
)

log = structlog.get_logger(__name__)

_Tracer = Callable[[FrameType, str, Any], Any]


class BudgetExhausted(BaseException):
    """Raised inside script frames once the invocation may no longer run.

    Not an ``Exception`` subclass, so ``except Exception`` in a script
    cannot swallow it.
    """


class ExecutionBudget:
    """Wall-clock budget for the script frames of one invocation.

    Installed with ``sys.settrace`` on the worker thread. Every call and
    line event in code compiled from the script checks the deadline and
    the stop flag, so busy loops end even though they never yield.
    """

    def __init__(self, filename: str, timeout: float) -> None:
        self.filename = filename
        self.deadline = time.monotonic() + timeout
        self._stopped = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[Any] | None = None

    @property
    def exhausted(self) -> bool:
        return self._stopped or time.monotonic() >= self.deadline

    def attach(self, loop: asyncio.AbstractEventLoop, task: asyncio.Task[Any]) -> None:
        """Register the worker loop so ``stop()`` can wake an idle script."""
        self._loop = loop
        self._task = task
        if self._stopped:
            task.cancel()

    def stop(self) -> None:
        """Revoke the budget from the host side (timeout or cancellation)."""
        self._stopped = True
        loop, task = self._loop, self._task
        if loop is None or task is None:
            return
        try:
            loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # Worker loop already closed: the invocation has finished
            pass

    def trace(self, frame: FrameType, event: str, arg: Any) -> _Tracer | None:
        if frame.f_code.co_filename != self.filename:
            return None
        self._check()
        return self._trace_line

    def _trace_line(self, frame: FrameType, event: str, arg: Any) -> _Tracer:
        if event == "line":
            self._check()
        return self._trace_line

    def _check(self) -> None:
        if self.exhausted:
            raise BudgetExhausted


class SandboxRuntime:
    """Implements ``SandboxPort`` for restricted-Python scraper scripts.

    Args:
        http_client: Shared client backing ``ctx.fetch``. Requests always
            run on the loop that calls ``invoke``.
        config: Timeouts and size caps.
    """

    def __init__(
        self, *, http_client: httpx.AsyncClient, config: SandboxConfig
    ) -> None:
        self._http = http_client
        self._config = config

    def validate(self, source: str, *, filename: str = "<scraper>") -> None:
        if len(source.encode("utf-8")) > self._config.max_script_bytes:
            raise ScriptValidationError(
                f"{filename}: script exceeds {self._config.max_script_bytes} bytes"
            )
        compile_script(source, filename)

    async def invoke(
        self,
        scraper: ScraperDescriptor,
        query: AggregationQuery,
        *,
        timeout: float | None = None,
    ) -> list[StreamResult]:
        timeout = timeout or self._config.invocation_timeout_seconds
        budget = ExecutionBudget(f"<scraper {scraper.id}>", timeout)
        host_loop = asyncio.get_running_loop()
        t0 = time.perf_counter()
        worker = asyncio.to_thread(
            self._run_in_worker, scraper, query, budget, host_loop
        )
        try:
            results = await asyncio.wait_for(worker, timeout=timeout)
        except (TimeoutError, BudgetExhausted):
            log.warning("scraper_timeout", scraper=scraper.id, timeout=timeout)
            raise InvocationTimeoutError(
                f"{scraper.name} did not finish within {timeout:g}s"
            ) from None
        except InvocationError as e:
            log.warning(
                "scraper_failed",
                scraper=scraper.id,
                kind=e.kind.value,
                error=e.message,
            )
            raise
        finally:
            budget.stop()

        log.debug(
            "scraper_succeeded",
            scraper=scraper.id,
            result_count=len(results),
            duration_ms=round((time.perf_counter() - t0) * 1000, 1),
        )
        return results

    def _run_in_worker(
        self,
        scraper: ScraperDescriptor,
        query: AggregationQuery,
        budget: ExecutionBudget,
        host_loop: asyncio.AbstractEventLoop,
    ) -> list[StreamResult]:
        previous = sys.gettrace()
        sys.settrace(budget.trace)
        try:
            return asyncio.run(self._run(scraper, query, budget, host_loop))
        finally:
            sys.settrace(previous)

    async def _run(
        self,
        scraper: ScraperDescriptor,
        query: AggregationQuery,
        budget: ExecutionBudget,
        host_loop: asyncio.AbstractEventLoop,
    ) -> list[StreamResult]:
        task = asyncio.current_task()
        if task is not None:
            budget.attach(asyncio.get_running_loop(), task)

        try:
            code = compile_script(scraper.script_source, budget.filename)
        except ScriptValidationError as e:
            raise ScriptFaultError(e.message) from e

        namespace: dict[str, object] = {
            "__builtins__": dict(SAFE_BUILTINS),
            "__name__": f"scraper_{scraper.manifest_id}",
        }
        try:
            exec(code, namespace)  # noqa: S102
        except Exception as e:
            raise ScriptFaultError(f"{type(e).__name__}: {e}") from e

        entry = namespace.get(ENTRYPOINT)
        if not inspect.iscoroutinefunction(entry):
            raise ScriptFaultError(f"'{ENTRYPOINT}' is not an async function")

        ctx = ScriptContext(
            scraper_id=scraper.id,
            fetch=SandboxFetch(
                self._http,
                scraper_id=scraper.id,
                timeout=self._config.fetch_timeout_seconds,
                max_bytes=self._config.max_response_bytes,
                user_agent=self._config.fetch_user_agent,
                loop=host_loop,
            ),
            settings=scraper.settings,
        )
        log.debug(
            "scraper_invoke",
            scraper=scraper.id,
            code=script_digest(scraper.script_source),
            external_id=query.external_id,
        )
        try:
            raw = await entry(MappingProxyType(query.as_script_mapping()), ctx)
        except NetworkError as e:
            raise ScriptNetworkError(str(e)) from e
        except Exception as e:
            raise ScriptFaultError(f"{type(e).__name__}: {e}") from e
        finally:
            ctx.close()

        return parse_script_output(raw, source_name=scraper.name)
