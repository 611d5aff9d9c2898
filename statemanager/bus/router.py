"""
Signal Router

Central registration table and dispatcher for inbound bus traffic.

Entities never hold closures on the bus connection. They register
(match, entity_id, handler) routes here; the router owns the bus match
rules and a single worker task that consumes one queue in arrival order.
Every signal handler and every external property write runs to completion
on that worker before the next message is looked at, so entity state and
the local property cache need no locking.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..common.logging_setup import get_service_logger
from .gateway import BusGateway, Signal

logger = get_service_logger("bus.router")

Handler = Callable[[Signal], Awaitable[None]]
Job = Callable[[], Awaitable[Any]]


def _arg0path_matches(value: str, pattern: str) -> bool:
    """arg0path semantics: equal, or one is a '/'-terminated prefix of the other"""
    if value == pattern:
        return True
    if pattern.endswith("/") and value.startswith(pattern):
        return True
    return value.endswith("/") and pattern.startswith(value)


@dataclass(frozen=True)
class SignalMatch:
    """Filter for one class of signal; also the key of the routing table"""
    member: str
    interface: str
    path: str | None = None
    arg0: str | None = None
    arg0path: str | None = None

    def rule(self) -> str:
        """Bus daemon match rule string"""
        parts = [
            "type='signal'",
            f"interface='{self.interface}'",
            f"member='{self.member}'",
        ]
        if self.path is not None:
            parts.append(f"path='{self.path}'")
        if self.arg0 is not None:
            parts.append(f"arg0='{self.arg0}'")
        if self.arg0path is not None:
            parts.append(f"arg0path='{self.arg0path}'")
        return ",".join(parts)

    def matches(self, signal: Signal) -> bool:
        if signal.member != self.member or signal.interface != self.interface:
            return False
        if self.path is not None and signal.path != self.path:
            return False

        first = signal.body[0] if signal.body else None
        if self.arg0 is not None and first != self.arg0:
            return False
        if self.arg0path is not None:
            if not isinstance(first, str) or not _arg0path_matches(first, self.arg0path):
                return False
        return True


class SignalRouter:
    """
    Routing table plus the single dispatch worker.

    Usage:
        router = SignalRouter(gateway)
        await router.start()
        await router.subscribe("bmc", match, handler)
    """

    def __init__(self, gateway: BusGateway):
        self._gateway = gateway
        self._routes: dict[SignalMatch, dict[str, Handler]] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._running = False

        gateway.on_signal(self.post)
        gateway.on_set_request(self.submit)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the dispatch worker"""
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._run())
        logger.debug("Signal dispatcher started")

    async def stop(self) -> None:
        """Stop the dispatch worker; queued messages are dropped"""
        self._running = False
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def subscribe(self, entity_id: str, match: SignalMatch, handler: Handler) -> None:
        """Route signals matching match to handler, on behalf of entity_id"""
        handlers = self._routes.get(match)
        if handlers is None:
            # The route only exists once the bus accepted its match rule
            await self._gateway.add_match(match.rule())
            handlers = self._routes.setdefault(match, {})
        handlers[entity_id] = handler

    async def unsubscribe(self, entity_id: str, match: SignalMatch | None = None) -> None:
        """Remove one route of entity_id, or all of them when match is None"""
        keys = [match] if match is not None else list(self._routes)
        for key in keys:
            handlers = self._routes.get(key)
            if not handlers or entity_id not in handlers:
                continue
            del handlers[entity_id]
            if not handlers:
                del self._routes[key]
                try:
                    await self._gateway.remove_match(key.rule())
                except Exception as e:
                    logger.warning(f"Failed to remove match {key.rule()}: {e}")

    def is_subscribed(self, entity_id: str, match: SignalMatch) -> bool:
        return entity_id in self._routes.get(match, {})

    def post(self, signal: Signal) -> None:
        """Queue an inbound signal for dispatch"""
        self._queue.put_nowait((signal, None))

    def submit(self, job: Job) -> asyncio.Future:
        """
        Queue a coroutine factory to run on the dispatch worker.

        Returns:
            Future resolved with the job's result or exception
        """
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        return future

    async def dispatch(self, signal: Signal) -> int:
        """
        Deliver one signal to every matching route.

        A handler that unsubscribes another route during delivery stops that
        route from seeing the signal.

        Returns:
            Number of handlers invoked
        """
        delivered = 0
        for match, handlers in list(self._routes.items()):
            if not match.matches(signal):
                continue
            for entity_id, handler in list(handlers.items()):
                if self._routes.get(match, {}).get(entity_id) is not handler:
                    continue
                delivered += 1
                try:
                    await handler(signal)
                except Exception as e:
                    logger.error(
                        f"Handler for {entity_id} failed on {signal.member}: {e}",
                        extra={"entity": entity_id, "member": signal.member},
                        exc_info=True,
                    )
        return delivered

    async def drain(self) -> None:
        """Wait until everything queued so far has been processed"""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            item, future = await self._queue.get()
            try:
                if future is None:
                    await self.dispatch(item)
                else:
                    await self._run_job(item, future)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: Job, future: asyncio.Future) -> None:
        try:
            result = await job()
        except Exception as e:
            if not future.done():
                future.set_exception(e)
            return
        if not future.done():
            future.set_result(result)
