"""Keyed one-shot timers backed by asyncio tasks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]
Callback = Callable[[], Awaitable[Any]]
Runner = Callable[[Callback], Awaitable[Any]]


class TimerRegistry:
	"""Schedules callbacks by key; rescheduling a key replaces its pending timer.

	``runner`` lets the owner route callbacks through its single writer (for
	example ``SerialExecutor.submit``). Once closed no timer fires again.
	"""

	def __init__(self, *, sleep: Sleep = asyncio.sleep, runner: Optional[Runner] = None, name: str = "timers") -> None:
		self._sleep = sleep
		self._runner = runner
		self._name = name
		self._tasks: Dict[str, asyncio.Task] = {}
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	def schedule(self, key: str, delay: float, callback: Callback) -> bool:
		if self._closed:
			return False
		self.cancel(key)
		self._tasks[key] = asyncio.create_task(
			self._fire(key, max(0.0, float(delay)), callback),
			name=f"{self._name}:{key}",
		)
		return True

	def cancel(self, key: str) -> bool:
		task = self._tasks.pop(key, None)
		if task is None:
			return False
		if task is not asyncio.current_task():
			task.cancel()
		return True

	def cancel_matching(self, prefix: str) -> int:
		keys = [key for key in self._tasks if key.startswith(prefix)]
		for key in keys:
			self.cancel(key)
		return len(keys)

	def active(self, key: str) -> bool:
		task = self._tasks.get(key)
		return task is not None and not task.done()

	def keys(self) -> Iterable[str]:
		return tuple(self._tasks)

	async def _fire(self, key: str, delay: float, callback: Callback) -> None:
		try:
			await self._sleep(delay)
			if self._closed or self._tasks.get(key) is not asyncio.current_task():
				return
			self._tasks.pop(key, None)
			if self._runner is not None:
				await self._runner(callback)
			else:
				await callback()
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("timer %s:%s failed", self._name, key)

	async def close(self) -> None:
		"""Cancel every pending timer and wait for the tasks to unwind."""
		self._closed = True
		tasks = [task for task in self._tasks.values() if task is not asyncio.current_task()]
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task


__all__ = ["TimerRegistry"]
