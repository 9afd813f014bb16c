"""Single-writer executor that serialises every state mutation."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

_Job = Tuple[Callable[..., Awaitable[Any]], Tuple[Any, ...], "asyncio.Future[Any]"]


class ExecutorClosedError(RuntimeError):
	"""Raised when work is submitted after the executor was closed."""


class SerialExecutor:
	"""Runs submitted coroutine functions one at a time, in submission order.

	Inbound frames and locally issued actions both go through ``submit`` so the
	state they touch only ever has one writer. Work submitted from inside a job
	runs inline instead of being queued behind itself.
	"""

	def __init__(self, name: str = "dispatch") -> None:
		self._name = name
		self._queue: Optional[asyncio.Queue[_Job]] = None
		self._worker: Optional[asyncio.Task] = None
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	@property
	def in_worker(self) -> bool:
		return self._worker is not None and asyncio.current_task() is self._worker

	def submit_nowait(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> "asyncio.Future[Any]":
		if self._closed:
			raise ExecutorClosedError(f"{self._name} executor is closed")
		loop = asyncio.get_running_loop()
		future: asyncio.Future[Any] = loop.create_future()
		if self._queue is None:
			self._queue = asyncio.Queue()
		self._queue.put_nowait((fn, args, future))
		if self._worker is None or self._worker.done():
			self._worker = asyncio.create_task(self._run(), name=f"serial:{self._name}")
		return future

	async def submit(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
		if self.in_worker:
			return await fn(*args)
		return await self.submit_nowait(fn, *args)

	async def _run(self) -> None:
		assert self._queue is not None
		while True:
			fn, args, future = await self._queue.get()
			if future.cancelled():
				continue
			try:
				result = await fn(*args)
			except asyncio.CancelledError:
				if not future.done():
					future.cancel()
				raise
			except Exception as exc:
				if not future.done():
					future.set_exception(exc)
			else:
				if not future.done():
					future.set_result(result)

	async def close(self) -> None:
		"""Stop the worker; jobs still queued are cancelled."""
		self._closed = True
		worker = self._worker
		self._worker = None
		if worker is not None and worker is not asyncio.current_task():
			worker.cancel()
			with suppress(asyncio.CancelledError):
				await worker
		if self._queue is not None:
			while not self._queue.empty():
				_, _, future = self._queue.get_nowait()
				if not future.done():
					future.cancel()
		logger.debug("serial executor %s closed", self._name)


__all__ = ["ExecutorClosedError", "SerialExecutor"]
