"""Backend invocation: the command-execution CLI and the job queue in front of it."""
from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import structlog

from duet.errors import BackendError
from duet.protocol.constants import BACKEND_FAILURE_ANSWER

from .sentences import SentenceSplitter

logger = structlog.get_logger()

SentenceCallback = Callable[[str], Awaitable[None]]
STREAM_LINE_LIMIT = 8 * 1024 * 1024


@dataclass
class BackendResult:
    text: str
    usage: int = 0
    ok: bool = True
    # session the answer was produced under; None after a retry without one
    session_id: Optional[str] = None


class Backend(Protocol):
    async def run(self, question: str, session_id: Optional[str], resume: bool,
                  on_sentence: Optional[SentenceCallback] = None,
                  context: Optional[str] = None) -> BackendResult: ...


def total_input_tokens(usage: Dict[str, Any]) -> int:
    total = 0
    for k in ("input_tokens", "cache_read_input_tokens", "cache_creation_input_tokens"):
        v = usage.get(k)
        if isinstance(v, int):
            total += v
    return total


def with_context(question: str, context: Optional[str]) -> str:
    if not context:
        return question
    return f"Summary of our conversation so far:\n{context}\n\n{question}"


class StreamJsonParser:
    """Consumes ``--output-format stream-json`` lines from the CLI."""

    def __init__(self):
        self.text_parts: List[str] = []
        self.result: Optional[str] = None
        self.usage = 0
        self.is_error = False

    def feed_line(self, line: str) -> List[str]:
        """Returns the assistant text deltas carried by ``line``."""
        line = line.strip()
        if not line:
            return []
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("backend_line_skipped", preview=line[:80])
            return []
        if not isinstance(event, dict):
            return []

        kind = event.get("type")
        if kind == "assistant":
            message = event.get("message") or {}
            usage = message.get("usage")
            if isinstance(usage, dict):
                self.usage = total_input_tokens(usage)
            deltas = []
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                    deltas.append(block["text"])
            self.text_parts.extend(deltas)
            return deltas
        if kind == "result":
            if isinstance(event.get("result"), str):
                self.result = event["result"]
            self.is_error = bool(event.get("is_error"))
            usage = event.get("usage")
            if isinstance(usage, dict) and not self.usage:
                self.usage = total_input_tokens(usage)
        return []

    def text(self) -> str:
        if self.result is not None and self.result.strip():
            return self.result.strip()
        return "\n".join(self.text_parts).strip()


class CommandBackend:
    def __init__(self, command: Optional[List[str]] = None, system_prompt: Optional[str] = None,
                 work_dir: Optional[str] = None, timeout: float = 120.0):
        self.command = list(command or ["claude"])
        self.system_prompt = system_prompt
        self.work_dir = work_dir
        self.timeout = timeout

    def build_args(self, question: str, session_id: Optional[str], resume: bool) -> List[str]:
        args = self.command + ["--print", "--output-format", "stream-json", "--verbose"]
        if session_id:
            args += ["--resume" if resume else "--session-id", session_id]
        if self.system_prompt:
            args += ["--append-system-prompt", self.system_prompt]
        args.append(question)
        return args

    async def run(self, question: str, session_id: Optional[str], resume: bool,
                  on_sentence: Optional[SentenceCallback] = None,
                  context: Optional[str] = None) -> BackendResult:
        args = self.build_args(with_context(question, context), session_id, resume)
        logger.info("backend_started", session_id=session_id, resume=resume)
        env = dict(os.environ)
        env["PATH"] = os.pathsep.join(["/opt/homebrew/bin", "/usr/local/bin", env.get("PATH", "")])
        try:
            proc = await asyncio.create_subprocess_exec(
                *args, cwd=self.work_dir, env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            raise BackendError(f"cannot start {args[0]}: {e}") from e

        parser = StreamJsonParser()
        splitter = SentenceSplitter()
        # drained alongside stdout; a full stderr pipe would stall the child
        stderr_task = asyncio.create_task(proc.stderr.read())

        async def pump():
            async for raw in proc.stdout:
                for delta in parser.feed_line(raw.decode("utf-8", errors="replace")):
                    if on_sentence is not None:
                        for sentence in splitter.feed(delta + "\n"):
                            await on_sentence(sentence)
            if on_sentence is not None:
                for sentence in splitter.flush():
                    await on_sentence(sentence)
            return await proc.wait()

        try:
            code = await asyncio.wait_for(pump(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await _reap(proc, stderr_task)
            raise BackendError(f"backend exceeded {self.timeout:.0f}s") from None
        except ValueError as e:
            # stdout line longer than the reader limit
            await _reap(proc, stderr_task)
            raise BackendError(f"backend output unreadable: {e}") from e
        except BaseException:
            await _reap(proc, stderr_task)
            raise

        err = (await stderr_task).decode("utf-8", errors="replace")
        if code != 0:
            raise BackendError(f"backend exited with {code}: {err[:200]}")
        answer = parser.text()
        if parser.is_error or not answer:
            raise BackendError("backend returned no answer")
        logger.info("backend_finished", session_id=session_id, chars=len(answer), usage=parser.usage)
        return BackendResult(text=answer, usage=parser.usage)


async def _reap(proc, stderr_task: asyncio.Task):
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
    stderr_task.cancel()
    await asyncio.gather(stderr_task, return_exceptions=True)


@dataclass
class _Job:
    question: str
    session_id: Optional[str]
    resume: bool
    on_sentence: Optional[SentenceCallback]
    context: Optional[str]
    future: asyncio.Future


class BackendJobQueue:
    """Runs backend invocations one at a time, in submission order."""

    def __init__(self, backend: Backend):
        self.backend = backend
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    async def submit(self, question: str, session_id: Optional[str] = None, resume: bool = False,
                     on_sentence: Optional[SentenceCallback] = None,
                     context: Optional[str] = None) -> BackendResult:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="backend-worker")
        fut = asyncio.get_running_loop().create_future()
        await self._queue.put(_Job(question, session_id, resume, on_sentence, context, fut))
        return await fut

    async def _run(self):
        while True:
            job: _Job = await self._queue.get()
            try:
                result = await self._execute(job)
                if not job.future.done():
                    job.future.set_result(result)
            except Exception as e:
                if not job.future.done():
                    job.future.set_exception(e)
            finally:
                self._queue.task_done()

    async def _execute(self, job: _Job) -> BackendResult:
        streamed = 0

        async def counted(sentence: str):
            nonlocal streamed
            streamed += 1
            await job.on_sentence(sentence)

        on_sentence = counted if job.on_sentence is not None else None
        try:
            result = await self.backend.run(job.question, job.session_id, job.resume,
                                            on_sentence, job.context)
            result.session_id = job.session_id
            return result
        except BackendError as e:
            logger.warning("backend_failed", session_id=job.session_id, error=str(e))
            if not job.session_id:
                return BackendResult(text=BACKEND_FAILURE_ANSWER, ok=False)

        # once sentences have gone out, the retry reports only its final text
        retry_sentence = job.on_sentence if not streamed else None
        logger.info("backend_retry_without_session", session_id=job.session_id, streamed=streamed)
        try:
            return await self.backend.run(job.question, None, False, retry_sentence, job.context)
        except BackendError as e:
            logger.warning("backend_failed", session_id=None, error=str(e))
            return BackendResult(text=BACKEND_FAILURE_ANSWER, ok=False)

    async def close(self):
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
