#!/usr/bin/env python3
#
# acmesecrets/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Async interval scheduler driving the periodic resync."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypedDict

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

_MIN_INTERVAL_S = 1.0
_MAX_BACKOFF = 300.0


class JobStatus(TypedDict):
	name: str
	interval: float
	last_ok: str | None
	last_attempt: str | None
	last_error: str | None
	is_running: bool
	run_count: int
	fail_count: int


@dataclass
class _Job:
	name: str
	interval: float
	func: Callable[[], Awaitable[None]]
	run_on_start: bool = False
	initial_delay: float = 0.0
	timeout: float | None = None
	last_ok: datetime | None = None
	last_attempt: datetime | None = None
	last_error: str | None = None
	run_count: int = 0
	fail_count: int = 0


class Scheduler:
	"""Runs registered coroutines at fixed intervals until stopped.

	Usage::

		scheduler = Scheduler()
		scheduler.add("resync", 300, resync, run_on_start=True, initial_delay=10)
		await scheduler.start()
		...
		await scheduler.shutdown()

	A failing job backs off exponentially (capped at five minutes) but keeps
	its original rhythm once it succeeds again.
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._loops: dict[str, asyncio.Task] = {}
		self._stopping: asyncio.Event | None = None
		self._started = False

	@property
	def running(self) -> bool:
		return self._started

	def add(
		self,
		name: str,
		interval: float,
		func: Callable[[], Awaitable[None]],
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
	) -> None:
		"""Register a periodic job.

		Raises:
			RuntimeError: the scheduler is already running
			ValueError: duplicate name, interval below one second, or a
				negative / orphaned ``initial_delay``
		"""
		if self._started:
			raise RuntimeError(f"scheduler already started, cannot register {name!r}")
		if name in self._jobs:
			raise ValueError(f"duplicate job name {name!r}")
		if interval < _MIN_INTERVAL_S:
			raise ValueError(f"interval must be >= {_MIN_INTERVAL_S}, got {interval}")
		if initial_delay < 0:
			raise ValueError(f"initial_delay must be >= 0, got {initial_delay}")
		if initial_delay > 0 and not run_on_start:
			raise ValueError("initial_delay only applies together with run_on_start")

		self._jobs[name] = _Job(
			name=name,
			interval=interval,
			func=func,
			run_on_start=run_on_start,
			initial_delay=initial_delay,
			timeout=timeout,
		)

	async def start(self) -> None:
		if self._started:
			return
		self._started = True
		self._stopping = asyncio.Event()
		for job in self._jobs.values():
			self._loops[job.name] = asyncio.create_task(self._loop(job))
			_log.info("SCHEDULER job=%s scheduled every %.0fs", job.name, job.interval)

	async def shutdown(self, timeout: float = 5.0) -> None:
		"""Signal every loop to exit, cancelling the ones still busy after ``timeout``."""
		if not self._started:
			return
		self._started = False
		if self._stopping is not None:
			self._stopping.set()

		pending = [t for t in self._loops.values() if not t.done()]
		if pending:
			_log.info("SCHEDULER waiting for %d tasks to finish", len(pending))
			_, not_done = await asyncio.wait(pending, timeout=timeout)
			if not_done:
				_log.warning("SCHEDULER %d tasks did not stop in time, cancelling", len(not_done))
				for task in not_done:
					task.cancel()
				await asyncio.gather(*not_done, return_exceptions=True)

		self._loops.clear()
		_log.info("SCHEDULER stopped")

	async def _sleep(self, seconds: float) -> bool:
		"""Wait ``seconds``; True if the stop signal arrived meanwhile."""
		assert self._stopping is not None
		try:
			await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, seconds))
			return True
		except asyncio.TimeoutError:
			return not self._started

	async def _loop(self, job: _Job) -> None:
		loop = asyncio.get_running_loop()
		failures = 0
		next_run = loop.time() + job.interval

		try:
			if job.run_on_start:
				if job.initial_delay > 0 and await self._sleep(job.initial_delay):
					return
				next_run = loop.time()

			while self._started:
				if await self._sleep(next_run - loop.time()):
					break

				ok = await self._run_once(job)
				now = loop.time()
				if ok:
					failures = 0
					# Drop intervals missed while a long run was in progress
					missed = 0
					next_run += job.interval
					while next_run <= now:
						next_run += job.interval
						missed += 1
					if missed:
						_log.warning("SCHEDULER job=%s skipped %d intervals", job.name, missed)
				else:
					failures += 1
					backoff = min(2.0 ** failures, _MAX_BACKOFF)
					_log.error(
						"SCHEDULER job=%s retrying in %.0fs after %d consecutive failures",
						job.name, backoff, failures,
					)
					next_run = max(next_run + job.interval, now + backoff)
		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s loop cancelled", job.name)
		except Exception:
			_log.exception("SCHEDULER job=%s run loop crashed", job.name)

	async def _run_once(self, job: _Job) -> bool:
		job.last_attempt = datetime.now(timezone.utc)
		try:
			if job.timeout is not None:
				await asyncio.wait_for(job.func(), timeout=job.timeout)
			else:
				await job.func()
		except asyncio.TimeoutError:
			job.fail_count += 1
			job.last_error = f"timed out after {job.timeout:.0f}s"
			_log.error("SCHEDULER job=%s %s (failure #%d)", job.name, job.last_error, job.fail_count)
			return False
		except Exception as exc:
			job.fail_count += 1
			job.last_error = f"{type(exc).__name__}: {exc}"
			_log.exception("SCHEDULER job=%s raised (failure #%d)", job.name, job.fail_count)
			return False

		job.last_ok = job.last_attempt
		job.last_error = None
		job.run_count += 1
		_log.info("SCHEDULER job=%s done (run #%d)", job.name, job.run_count)
		return True

	def get_status(self) -> list[JobStatus]:
		return [
			{
				"name": job.name,
				"interval": job.interval,
				"last_ok": job.last_ok.isoformat() if job.last_ok else None,
				"last_attempt": job.last_attempt.isoformat() if job.last_attempt else None,
				"last_error": job.last_error,
				"is_running": job.name in self._loops and not self._loops[job.name].done(),
				"run_count": job.run_count,
				"fail_count": job.fail_count,
			}
			for job in self._jobs.values()
		]
