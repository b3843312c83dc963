#!/usr/bin/env python3
"""
Agent runner - drives one agent CLI turn inside the sandbox.

Runs detached, started by the launcher (or chained into by the setup
program). Responsibilities:
1. Start the agent CLI for the job's backend, resuming a session if given
2. Translate its stdout into events and write them to the event store
3. Register the session once the backend reports its id
4. Guarantee exactly one terminal result event per run
5. Forward SIGTERM/SIGINT to the agent
6. Clear the project's tracked PID on exit
"""

import argparse
import asyncio
import os
import signal
import time
from pathlib import Path

import httpx

from .. import config
from ..events.models import (
    EventPayload,
    ResultPayload,
    ResultSource,
    ResultSubtype,
    SystemPayload,
)
from ..events.store import EventStore
from ..events.writer import EventWriter
from ..log_config import configure_logging, get_logger
from ..registry.projects import ProjectRepository
from ..registry.sessions import SessionRegistry
from .backends import build_command
from .parser import OutputFilter, StreamEventParser, extract_preview_url
from .snapshots import SnapshotClient
from .types import AgentJob


class AgentRunner:
    """
    One agent turn, from process start to the terminal result event.

    Events seen before the backend reports a session id are held in a
    bounded buffer and written once the session is registered.
    """

    MAX_LINE_BYTES = 16 * 1024 * 1024
    PENDING_LIMIT = 200
    TOUCH_INTERVAL_SECONDS = 60.0
    TERMINATE_GRACE_SECONDS = 10.0
    SNAPSHOT_WAIT_SECONDS = 15.0
    STDERR_TAIL_LINES = 20

    def __init__(
        self,
        job: AgentJob,
        store: EventStore,
        registry: SessionRegistry,
        projects: ProjectRepository,
        snapshots: SnapshotClient | None = None,
        first_output_timeout: float | None = None,
    ):
        self.job = job
        self.registry = registry
        self.projects = projects
        self.snapshots = snapshots
        self.log = get_logger(
            "runner",
            service="sandbox",
            project_id=job.project_id,
            sandbox_id=job.sandbox_id,
            backend=job.backend.value,
        )
        self.writer = EventWriter(store, job.project_id, log=self.log)
        self.parser = StreamEventParser(job.backend)
        self.output_filter = OutputFilter()
        self.first_output_timeout = first_output_timeout or config.resolve_seconds(
            config.RUNNER_FIRST_OUTPUT_TIMEOUT,
            config.DEFAULT_FIRST_OUTPUT_TIMEOUT_SECONDS,
            5.0,
            600.0,
            log=self.log,
        )

        self.process: asyncio.subprocess.Process | None = None
        self.session_id: str | None = job.session_id
        self.preview_url: str | None = None
        self.result_written = False
        self.cancelled = False
        self.timed_out = False
        self._first_output = asyncio.Event()
        self._pending: list[EventPayload] = []
        self._buffer_overflowed = False
        self._stderr_tail: list[str] = []
        self._last_touch = 0.0
        self._background: set[asyncio.Task] = set()

    # Event writing

    async def _emit(self, payload: EventPayload) -> None:
        if isinstance(payload, ResultPayload):
            if self.cancelled:
                # Stop already wrote the cancelled result
                self.log.debug("runner.result_after_cancel", source=payload.source)
                return
            if self.result_written:
                self.log.debug("runner.duplicate_result", source=payload.source)
                return
            self.result_written = True

        if self.session_id is None and not self._buffer_overflowed:
            if len(self._pending) < self.PENDING_LIMIT:
                self._pending.append(payload)
                return
            self._buffer_overflowed = True
            self.log.warn("runner.pending_overflow", pending=len(self._pending))
            await self._flush_pending()

        await self.writer.write(payload, self.session_id)
        await self._maybe_touch()

        if isinstance(payload, ResultPayload) and payload.is_success:
            self._schedule_snapshot()

    async def _flush_pending(self) -> None:
        pending, self._pending = self._pending, []
        for payload in pending:
            await self.writer.write(payload, self.session_id)
            if isinstance(payload, ResultPayload) and payload.is_success:
                self._schedule_snapshot()

    async def _maybe_touch(self) -> None:
        if self.session_id is None:
            return
        now = time.monotonic()
        if now - self._last_touch < self.TOUCH_INTERVAL_SECONDS:
            return
        self._last_touch = now
        try:
            await self.registry.touch(self.session_id)
        except Exception as e:
            self.log.warn("session.touch_error", exc=e, session_id=self.session_id)

    def _schedule_snapshot(self) -> None:
        if self.snapshots is None:
            return
        task = asyncio.create_task(
            self.snapshots.request(self.job.project_id, self.job.sandbox_id)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Record handling

    async def _on_session(self, payload: SystemPayload) -> None:
        session_id = payload.session_id
        if session_id == self.session_id:
            # Resumed conversation; no new init event
            self.log.info("session.resumed", session_id=session_id)
            return

        if self.session_id is not None:
            self.log.warn(
                "session.reassigned",
                previous_session_id=self.session_id,
                session_id=session_id,
            )

        try:
            await self.registry.start(
                session_id,
                self.job.project_id,
                self.job.user_id,
                self.job.backend,
                self.job.working_directory,
            )
            await self.projects.update(self.job.project_id, session_id=session_id)
        except Exception as e:
            self.log.error("session.register_error", exc=e, session_id=session_id)

        self.session_id = session_id
        self.log = self.log.bind(session_id=session_id)
        self._last_touch = time.monotonic()
        await self.writer.write(payload, session_id)
        await self._flush_pending()

    async def _on_preview_url(self, url: str) -> None:
        if url == self.preview_url:
            return
        self.preview_url = url
        self.log.info("preview.ready", preview_url=url)
        try:
            await self.projects.update(self.job.project_id, preview_url=url)
        except Exception as e:
            self.log.error("preview.store_error", exc=e)
        await self._emit(
            SystemPayload(message="Preview ready", subtype="success", preview_url=url)
        )

    async def handle_line(self, line: str) -> None:
        self._first_output.set()
        try:
            await self._handle_stdout_record(line)
        except Exception as e:
            self.log.error("runner.parse_error", exc=e, stream="stdout", line=line[:200])

    async def _handle_stdout_record(self, line: str) -> None:
        for payload in self.parser.parse_line(line):
            if isinstance(payload, SystemPayload) and payload.subtype == "init":
                await self._on_session(payload)
            else:
                await self._emit(payload)

        url = extract_preview_url(line)
        if url:
            await self._on_preview_url(url)

    async def handle_stderr_line(self, line: str) -> None:
        try:
            await self._handle_stderr_record(line)
        except Exception as e:
            self.log.error("runner.parse_error", exc=e, stream="stderr", line=line[:200])

    async def _handle_stderr_record(self, line: str) -> None:
        self._stderr_tail = (self._stderr_tail + [line.rstrip()])[-self.STDERR_TAIL_LINES :]
        kept = self.output_filter.classify(line, source="stderr")
        if kept is not None:
            await self._emit(kept)
        url = extract_preview_url(line)
        if url:
            await self._on_preview_url(url)

    # Process lifecycle

    async def _read_stdout(self) -> None:
        assert self.process and self.process.stdout
        async for raw in self.process.stdout:
            await self.handle_line(raw.decode(errors="replace"))

    async def _read_stderr(self) -> None:
        assert self.process and self.process.stderr
        async for raw in self.process.stderr:
            await self.handle_stderr_line(raw.decode(errors="replace"))

    async def _watch_first_output(self) -> None:
        try:
            await asyncio.wait_for(self._first_output.wait(), timeout=self.first_output_timeout)
        except TimeoutError:
            self.timed_out = True
            self.log.error("runner.no_output", timeout_s=self.first_output_timeout)
            await self._emit(
                SystemPayload(
                    message=f"Agent produced no output within {int(self.first_output_timeout)}s",
                    subtype="error",
                )
            )
            await self.terminate(signal.SIGTERM)

    async def terminate(self, sig: signal.Signals = signal.SIGTERM) -> None:
        if not self.process or self.process.returncode is not None:
            return
        self.process.send_signal(sig)
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            self.log.warn("runner.kill", pid=self.process.pid)
            self.process.kill()

    def _handle_signal(self, sig: signal.Signals) -> None:
        self.log.info("runner.signal", signal_name=sig.name)
        self.cancelled = True
        if self.process and self.process.returncode is None:
            self.process.send_signal(sig)

    async def _start_process(self) -> None:
        command = build_command(
            self.job.backend,
            self.job.prompt,
            session_id=self.job.session_id,
            model=self.job.model,
        )
        stdin = asyncio.subprocess.DEVNULL
        if command.stdin is not None:
            stdin = asyncio.subprocess.PIPE
        self.process = await asyncio.create_subprocess_exec(
            *command.argv,
            cwd=self.job.working_directory,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=self.MAX_LINE_BYTES,
        )
        if command.stdin is not None and self.process.stdin:
            self.process.stdin.write(command.stdin.encode())
            await self.process.stdin.drain()
            self.process.stdin.close()

    async def _finish(self, exit_code: int) -> None:
        for payload in self.parser.flush():
            await self._emit(payload)

        if not self.result_written and not self.cancelled:
            if exit_code == 0 and not self.timed_out:
                fallback = ResultPayload(
                    subtype=ResultSubtype.SUCCESS.value,
                    source=ResultSource.FALLBACK.value,
                )
            else:
                detail = "\n".join(self._stderr_tail[-5:]) or None
                fallback = ResultPayload(
                    subtype=ResultSubtype.ERROR.value,
                    source=ResultSource.FALLBACK.value,
                    message=f"Agent exited with code {exit_code}",
                    result=detail,
                )
            await self._emit(fallback)

        if self._pending:
            # Never got a session id; keep the events at project level.
            self.log.warn("runner.no_session", pending=len(self._pending))
            await self._flush_pending()

    async def _abort(self, error: Exception) -> int:
        """Stop the agent after an unexpected failure and close the turn with an error."""
        self.log.error("runner.stream_error", exc=error)
        await self.terminate(signal.SIGTERM)
        await self._emit(
            ResultPayload(
                subtype=ResultSubtype.ERROR.value,
                source=ResultSource.FALLBACK.value,
                message=f"Agent output could not be processed: {error}",
            )
        )
        returncode = self.process.returncode if self.process else None
        return -1 if returncode is None else returncode

    async def run(self) -> int:
        """Run the turn to completion and return the agent's exit code."""
        start = time.time()
        self.log.info("runner.start", resume=bool(self.job.session_id))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        exit_code = -1
        try:
            try:
                await self._start_process()
            except OSError as e:
                self.log.error("runner.start_error", exc=e)
                await self._emit(
                    SystemPayload(message=f"Failed to start agent: {e}", subtype="error")
                )
                await self._emit(
                    ResultPayload(
                        subtype=ResultSubtype.ERROR.value,
                        source=ResultSource.FALLBACK.value,
                        message=str(e),
                    )
                )
                await self._flush_pending()
                return exit_code

            watchdog = asyncio.create_task(self._watch_first_output())
            readers = [
                asyncio.create_task(self._read_stdout()),
                asyncio.create_task(self._read_stderr()),
            ]
            try:
                await asyncio.gather(*readers)
                exit_code = await self.process.wait()
            except Exception as e:
                exit_code = await self._abort(e)
            finally:
                watchdog.cancel()
                for reader in readers:
                    reader.cancel()

            await self._finish(exit_code)
            return exit_code
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self._shutdown(exit_code, start)

    async def _shutdown(self, exit_code: int, start: float) -> None:
        if self._background:
            await asyncio.wait(self._background, timeout=self.SNAPSHOT_WAIT_SECONDS)

        try:
            await self.projects.clear_pid(self.job.project_id, expected_pid=os.getpid())
        except Exception as e:
            self.log.error("runner.clear_pid_error", exc=e)

        self.log.info(
            "runner.complete",
            exit_code=exit_code,
            cancelled=self.cancelled,
            timed_out=self.timed_out,
            result_written=self.result_written,
            events_written=self.writer.written,
            events_dropped=self.writer.dropped,
            duration_ms=int((time.time() - start) * 1000),
        )


def load_job(path: str) -> AgentJob:
    return AgentJob.model_validate_json(Path(path).read_text())


async def main():
    """Entry point for the agent runner."""
    parser = argparse.ArgumentParser(description="Agent runner")
    parser.add_argument("--job", required=True, help="Path to the agent job JSON file")
    args = parser.parse_args()

    configure_logging()
    job = load_job(args.job)

    async with httpx.AsyncClient() as client:
        runner = AgentRunner(
            job,
            EventStore.from_env(client),
            SessionRegistry.from_env(client),
            ProjectRepository.from_env(client),
            SnapshotClient(client),
        )
        return await runner.run()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
