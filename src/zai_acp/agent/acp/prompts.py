"""Prompt turn handlers for ACP."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, List

from acp import PromptResponse, RequestError
from acp.helpers import ContentBlock
from claude_agent_sdk import AssistantMessage, ResultMessage, SystemMessage, UserMessage
from claude_agent_sdk.types import StreamEvent

from zai_acp.agent.acp.auth_flow import API_KEY_URL, MANUAL_SETUP_HINT, run_setup_terminal
from zai_acp.agent.acp.auth_methods import client_supports_terminal, setup_command
from zai_acp.agent.bridge.analyzer import analyze_prompt
from zai_acp.agent.bridge.errors import is_auth_error, needs_login, unreachable
from zai_acp.agent.bridge.session_state import Session, SessionState
from zai_acp.agent.bridge.translator import normalize_block
from zai_acp.agent.prompt_utils import extract_prompt_text, prompt_to_engine_message
from zai_acp.log_utils import log_context, log_event

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT_S = 5.0
IGNORED_SYSTEM_SUBTYPES = frozenset({"init", "compact_boundary", "hook_response", "status"})
MAX_TURN_SUBTYPES = frozenset({"error_max_turns", "error_max_budget_usd", "error_max_structured_output_retries"})
LOCAL_STDOUT_TAG = "<local-command-stdout>"
LOCAL_STDERR_TAG = "<local-command-stderr>"
STREAMED_BLOCK_TYPES = frozenset({"text", "thinking"})
# The engine reports its own notices (login prompts included) under this model name.
SYNTHETIC_MODEL = "<synthetic>"

_CANCELLED = object()
_END = object()


class EventPump:
    """Pulls engine events one at a time, racing each pull against cancellation.

    A pull interrupted by cancellation stays pending so `drain()` can finish
    it; the underlying iterator is never advanced concurrently.
    """

    def __init__(self, events: AsyncIterator[Any]) -> None:
        self._events = events.__aiter__()
        self._pending: asyncio.Future[Any] | None = None

    async def next(self, cancel_event: asyncio.Event) -> Any:
        if cancel_event.is_set():
            return _CANCELLED
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._events.__anext__())
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({self._pending, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if self._pending not in done:
            return _CANCELLED
        pending, self._pending = self._pending, None
        try:
            return pending.result()
        except StopAsyncIteration:
            return _END

    async def _consume(self) -> int:
        dropped = 0
        if self._pending is not None:
            pending, self._pending = self._pending, None
            try:
                event = await pending
            except StopAsyncIteration:
                return dropped
            dropped += 1
            if isinstance(event, ResultMessage):
                return dropped
        async for event in self._events:
            dropped += 1
            if isinstance(event, ResultMessage):
                break
        return dropped

    async def drain(self, timeout: float) -> None:
        """Discard buffered events up to the turn's result, bounded by `timeout`."""
        try:
            dropped = await asyncio.wait_for(self._consume(), timeout)
        except asyncio.TimeoutError:
            log_event(logger, "acp.prompt.drain_timeout", level=logging.WARNING, timeout_s=timeout)
            return
        except Exception as exc:  # noqa: BLE001
            log_event(logger, "acp.prompt.drain_failed", level=logging.WARNING, error=str(exc))
            return
        log_event(logger, "acp.prompt.drained", level=logging.DEBUG, events=dropped)

    async def aclose(self) -> None:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                await pending
        closer = getattr(self._events, "aclose", None)
        if closer is not None:
            await closer()


def _result_diagnostic(result: ResultMessage) -> str:
    errors = getattr(result, "errors", None) or []
    joined = ", ".join(str(error) for error in errors)
    return joined or (result.result or "") or result.subtype


def _login_notice(message: AssistantMessage, blocks: List[Any]) -> str | None:
    """Text of an engine-generated login notice, or None for ordinary replies."""
    if getattr(message, "model", None) != SYNTHETIC_MODEL or len(blocks) != 1:
        return None
    block = blocks[0]
    if isinstance(block, dict) and block.get("type") == "text" and needs_login(block.get("text")):
        return str(block["text"])
    return None


class PromptMixin:
    async def prompt(
        self,
        prompt: List[ContentBlock],
        session_id: str,
        **_: Any,
    ) -> PromptResponse:
        """Process a prompt turn per Prompt Turn lifecycle (session/prompt)."""
        session = self._sessions.require(session_id)
        if session.turn_lock.locked() or session.in_turn:
            raise RequestError.invalid_request(
                {"message": "A prompt is already in progress for this session", "sessionId": session_id}
            )
        async with session.turn_lock:
            return await self._locked_prompt(session, prompt)

    async def _locked_prompt(self, session: Session, prompt: List[ContentBlock]) -> PromptResponse:
        with log_context(session_id=session.session_id):
            log_event(logger, "acp.prompt.request", blocks=len(prompt), state=session.state.value)
            if session.auth_required or session.state is SessionState.AWAITING_AUTH:
                early = await self._recover_auth_in_turn(session)
                if early is not None:
                    return early
            if session.engine is None:
                await self._start_engine(session)

            session.begin_turn()
            try:
                analysis = analyze_prompt(extract_prompt_text(prompt))
                log_event(
                    logger,
                    "acp.prompt.analysis",
                    complexity=analysis.complexity,
                    task_type=analysis.task_type,
                    score=analysis.score,
                    model=analysis.profile.model,
                    effort=analysis.profile.effort,
                )
                response = await self._run_turn(session, prompt)
            finally:
                session.end_turn()
            log_event(logger, "acp.prompt.complete", stop_reason=response.stop_reason)
            return response

    async def cancel(self, session_id: str, **_: Any) -> None:
        """Stop in-flight work for a session (Prompt Turn cancellation)."""
        session = self._sessions.get(session_id)
        with log_context(session_id=session_id):
            log_event(logger, "acp.prompt.cancel", known=session is not None)
            if session is None:
                return
            in_flight = session.request_cancel()
            if in_flight and session.engine is not None:
                await session.engine.interrupt()

    async def _run_turn(self, session: Session, prompt: List[ContentBlock]) -> PromptResponse:
        engine = session.engine
        if engine is None:
            raise RequestError.internal_error({"message": "Session has no engine connection"})
        await engine.send(prompt_to_engine_message(prompt, session.session_id))
        pump = EventPump(engine.events())
        try:
            while True:
                event = await pump.next(session.cancel_event)
                if event is _CANCELLED:
                    await pump.drain(self._drain_timeout_s)
                    return PromptResponse(stop_reason="cancelled")
                if event is _END:
                    break
                response = await self._handle_event(session, event)
                if response is not None:
                    return response
        finally:
            await pump.aclose()
        if session.cancelled:
            return PromptResponse(stop_reason="cancelled")
        raise RequestError.internal_error({"message": "Engine stream ended without a result"})

    async def _handle_event(self, session: Session, event: Any) -> PromptResponse | None:
        translator = session.translator
        if isinstance(event, StreamEvent):
            if not session.cancelled and translator is not None:
                for note in translator.translate_stream_event(event.event):
                    await self._send_update(note)
            return None
        if isinstance(event, SystemMessage):
            if event.subtype not in IGNORED_SYSTEM_SUBTYPES:
                unreachable(event, logger, where="system_message")
            return None
        if isinstance(event, ResultMessage):
            return await self._result_response(session, event)
        if isinstance(event, (UserMessage, AssistantMessage)):
            if not session.cancelled:
                await self._handle_message(session, event)
            return None
        unreachable(event, logger, where="engine_event")
        return None

    async def _handle_message(self, session: Session, message: UserMessage | AssistantMessage) -> None:
        content = message.content
        if isinstance(content, str):
            if LOCAL_STDOUT_TAG in content:
                log_event(logger, "acp.engine.local_stdout", output=content)
            elif LOCAL_STDERR_TAG in content:
                log_event(logger, "acp.engine.local_stderr", level=logging.ERROR, output=content)
            # Plain user echoes add nothing to the feed.
            return

        blocks = [normalize_block(block) for block in content]
        if isinstance(message, UserMessage):
            if len(blocks) == 1 and isinstance(blocks[0], dict) and blocks[0].get("type") == "text":
                return
            role = "user"
        else:
            notice = _login_notice(message, blocks)
            if notice is not None:
                await self._handle_auth_failure(session, notice)
            blocks = [
                block
                for block in blocks
                if not (isinstance(block, dict) and block.get("type") in STREAMED_BLOCK_TYPES)
            ]
            role = "assistant"

        if session.translator is None:
            return
        for note in session.translator.translate_content(blocks, role):
            await self._send_update(note)

    async def _result_response(self, session: Session, result: ResultMessage) -> PromptResponse:
        if session.cancelled:
            return PromptResponse(stop_reason="cancelled")
        subtype = result.subtype
        diagnostic = _result_diagnostic(result)
        log_event(logger, "acp.engine.result", subtype=subtype, is_error=result.is_error)
        if subtype == "success":
            if needs_login(result.result):
                await self._handle_auth_failure(session, result.result or "")
            if result.is_error:
                if is_auth_error(result.result):
                    await self._handle_auth_failure(session, result.result or "")
                raise RequestError.internal_error({"message": result.result or diagnostic})
            return PromptResponse(stop_reason="end_turn")
        if subtype == "error_during_execution":
            if result.is_error:
                if is_auth_error(diagnostic):
                    await self._handle_auth_failure(session, diagnostic)
                raise RequestError.internal_error({"message": diagnostic})
            return PromptResponse(stop_reason="end_turn")
        if subtype in MAX_TURN_SUBTYPES:
            if result.is_error:
                raise RequestError.internal_error({"message": diagnostic})
            return PromptResponse(stop_reason="max_turn_requests")
        unreachable(result, logger, where="result_subtype")
        raise RequestError.internal_error({"message": f"Unexpected result from engine: {subtype}"})

    async def _handle_auth_failure(self, session: Session, diagnostic: str) -> None:
        """Invalidate the credential, park the session and raise `auth_required`."""
        log_event(logger, "acp.auth.failure", level=logging.ERROR, diagnostic=diagnostic)
        self._credentials.clear()
        session.require_auth()
        engine = session.detach_engine()
        if engine is not None:
            self._schedule(engine.close())
        raise RequestError.auth_required({"message": diagnostic or "Authentication required"})

    async def _recover_auth_in_turn(self, session: Session) -> PromptResponse | None:
        """Try to restore credentials before a turn.

        Returns None when the turn may proceed, otherwise the response that
        ends this prompt.
        """
        session.cancel_event.clear()
        if self._credentials.reload():
            session.recover_auth()
            log_event(logger, "acp.session.auth_recovered")
            return None

        if not client_supports_terminal(self._client_capabilities):
            command, args = setup_command()
            await self._send_text(
                session.session_id,
                "**Z.AI API key setup required**\n\n"
                "Run this command in a terminal:\n\n"
                f"```bash\n{' '.join([command, *args])}\n```\n\n"
                f"Then send your prompt again.\n\n{MANUAL_SETUP_HINT}",
            )
            return PromptResponse(stop_reason="end_turn")

        await self._send_text(
            session.session_id,
            f"**Z.AI API key setup**\n\nEnter your API key in the terminal.\n\nGet a key at {API_KEY_URL}",
        )
        await run_setup_terminal(
            self._conn,
            session.session_id,
            cwd=str(session.cwd),
            cancel_event=session.cancel_event,
        )
        if session.cancelled:
            log_event(logger, "acp.auth.setup_cancelled")
            return PromptResponse(stop_reason="cancelled")
        if self._credentials.reload():
            session.recover_auth()
            log_event(logger, "acp.session.auth_recovered")
            await self._send_text(session.session_id, "\n\nAPI key configured. Send your prompt again to continue.")
        else:
            await self._send_text(session.session_id, "\n\nThe API key was not configured. Please try again.")
        return PromptResponse(stop_reason="end_turn")
