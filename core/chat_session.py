"""
The chat session controller.

AssistantChat owns one linear transcript and drives the submit protocol:
truncate after the focused user turn, append an assistant turn, optionally
attach codebase context, stream the completion into the assistant turn and
finally append a fresh user turn.

All transcript mutation happens on the event loop thread, in synchronous
code between awaits, so background runs never interleave their writes.
Every write coming back from a background run first checks that its target
turn (and context) still exist; stale results are dropped and logged.
"""

from __future__ import annotations

import asyncio
import copy
import functools
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from base_classes import (
    CompletionMessage,
    CompletionProvider,
    CompletionRole,
    FileLoader,
    RetrievalService,
    TextRenderer,
)
from contexts.codebase_context import CodebaseContext, CodebaseExcerpt
from core.cancellation import CancellationToken, RunCancelled
from core.completion import DEFAULT_TEMPERATURE, CompletionPipeline
from core.context_attachment import DEFAULT_TOP_K, ContextAttacher, SubmitMode
from core.ids import ContextIdAllocator, MessageIdAllocator
from core.messages import (
    AssistantTurn,
    ChatMessage,
    ContextNotFoundError,
    RenderedText,
    TurnNotFoundError,
    UserTurn,
)
from utils.logging_utils import LoggingHandler, NullLogger
from utils.render_utils import PlainRenderer


Listener = Callable[[str, Dict[str, Any]], None]


class SubmissionState(str, Enum):
    EDITING = 'editing'
    SUBMITTED = 'submitted'
    POPULATING = 'populating'
    STREAMING = 'streaming'
    SETTLED = 'settled'


class PendingCompletion:
    """Handle for one in-flight submission run."""

    def __init__(self, submitted_id: int, assistant_id: int, mode: SubmitMode) -> None:
        self.submitted_id = submitted_id
        self.assistant_id = assistant_id
        self.mode = mode
        self.token = CancellationToken()
        self.state = SubmissionState.SUBMITTED
        # None until settled, then 'success' | 'error' | 'cancelled'
        self.outcome: Optional[str] = None
        self.error: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self, reason: Optional[str] = None) -> None:
        self.token.cancel(reason)

    async def wait(self) -> Optional[str]:
        """Wait for the run to finish without raising if it was cancelled."""
        if self.task is not None:
            await asyncio.wait([self.task])
        return self.outcome

    def __await__(self):
        return self.wait().__await__()


class AssistantChat:
    """Session controller for a single chat transcript."""

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        retrieval: Optional[RetrievalService] = None,
        loader: Optional[FileLoader] = None,
        renderer: Optional[TextRenderer] = None,
        logger: Optional[LoggingHandler] = None,
        model: Optional[str] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        top_k: int = DEFAULT_TOP_K,
        config: Any = None,
    ) -> None:
        self.provider = provider
        # SessionConfig the session was built from, if any
        self.config = config
        self.renderer = renderer or PlainRenderer()
        self.logger = logger or NullLogger()
        self._pipeline = CompletionPipeline(provider, self.renderer, temperature=temperature, logger=self.logger)
        self._attacher: Optional[ContextAttacher] = None
        if retrieval is not None and loader is not None:
            self._attacher = ContextAttacher(retrieval, loader, top_k=top_k, logger=self.logger)

        self._model = model or provider.default_model()
        self._messages: List[ChatMessage] = []
        self._next_message_id = MessageIdAllocator()
        self._next_context_id = ContextIdAllocator()
        self._focused_id: Optional[int] = None
        self._listeners: List[Listener] = []
        self.pending_completion: Optional[PendingCompletion] = None
        # Context population outlives the run that started it
        self._populations: Set[asyncio.Task] = set()

        self.push_new_user_message(True)

    # --- Observers --------------------------------------------------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, event: str, **data: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception as e:
                # A broken observer must not corrupt the transcript protocol
                self.logger.error(f'core.chat_session.listener.{event}', e)

    # --- Read-only surface --------------------------------------------------
    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        """Snapshot of the transcript; mutating it does not affect the session."""
        return tuple(copy.deepcopy(m) for m in self._messages)

    @property
    def last_message(self) -> Optional[ChatMessage]:
        return self._messages[-1] if self._messages else None

    @property
    def focused_message_id(self) -> Optional[int]:
        return self._focused_id

    @property
    def status(self) -> SubmissionState:
        pending = self.pending_completion
        if pending is None or pending.state is SubmissionState.SETTLED:
            return SubmissionState.EDITING
        return pending.state

    @property
    def last_outcome(self) -> Optional[str]:
        pending = self.pending_completion
        return pending.outcome if pending is not None else None

    @property
    def model(self) -> str:
        return self._model

    @model.setter
    def model(self, model: str) -> None:
        available = self.available_models()
        if available and model not in available:
            raise ValueError(f"Unknown model '{model}'. Available: {', '.join(available)}")
        old, self._model = self._model, model
        self.logger.session_event('model_changed', {'from': old, 'to': model})
        self._notify('model_changed', model=model)

    def available_models(self) -> List[str]:
        return list(self.provider.available_models())

    # --- Focus & editing ----------------------------------------------------
    def focus(self, message_id: int) -> None:
        self.user_message(message_id)
        self._focused_id = message_id
        self._notify('focus_changed', message_id=message_id)

    def blur(self) -> None:
        self._focused_id = None
        self._notify('focus_changed', message_id=None)

    def set_text(self, message_id: int, text: str) -> None:
        self.user_message(message_id).body = text or ''

    # --- Lookups (fail fast) -----------------------------------------------
    def has_message(self, message_id: int) -> bool:
        return any(m.id == message_id for m in self._messages)

    def user_message(self, message_id: int) -> UserTurn:
        for message in self._messages:
            if isinstance(message, UserTurn) and message.id == message_id:
                return message
        raise TurnNotFoundError(f"User message {message_id} not found")

    def assistant_message(self, message_id: int) -> AssistantTurn:
        for message in self._messages:
            if isinstance(message, AssistantTurn) and message.id == message_id:
                return message
        raise TurnNotFoundError(f"Assistant message {message_id} not found")

    def codebase_context(self, message_id: int, context_id: int) -> CodebaseContext:
        for context in self.user_message(message_id).contexts:
            if isinstance(context, CodebaseContext) and context.id == context_id:
                return context
        raise ContextNotFoundError(f"Codebase context {context_id} not found on message {message_id}")

    def _find_codebase_context(self, message_id: int, context_id: int) -> Optional[CodebaseContext]:
        try:
            return self.codebase_context(message_id, context_id)
        except LookupError:
            return None

    def _find_assistant(self, message_id: int) -> Optional[AssistantTurn]:
        try:
            return self.assistant_message(message_id)
        except TurnNotFoundError:
            return None

    # --- Transcript edits ---------------------------------------------------
    def push_new_user_message(self, focus: bool) -> UserTurn:
        message = UserTurn(id=self._next_message_id.post_inc())
        self._push_message(message)
        if focus:
            self._focused_id = message.id
            self._notify('focus_changed', message_id=message.id)
        return message

    def push_new_assistant_message(self) -> AssistantTurn:
        message = AssistantTurn(id=self._next_message_id.post_inc())
        self._push_message(message)
        return message

    def _push_message(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self._notify('turn_added', message_id=message.id, role=message.role)

    def truncate(self, last_message_id: int) -> None:
        """Keep every turn up to and including last_message_id."""
        index = next((i for i, m in enumerate(self._messages) if m.id == last_message_id), None)
        if index is None:
            self.logger.error('core.chat_session.truncate', message=f"message {last_message_id} not found")
            return
        removed = self._messages[index + 1:]
        if not removed:
            return
        del self._messages[index + 1:]
        removed_ids = [m.id for m in removed]
        if self._focused_id in removed_ids:
            self._focused_id = None
        pending = self.pending_completion
        if pending is not None and not pending.done() and pending.assistant_id in removed_ids:
            pending.cancel('truncated')
        self.logger.session_event('truncate', {'keep_through': last_message_id, 'removed': removed_ids})
        self._notify('turns_truncated', last_message_id=last_message_id, removed=removed_ids)

    def render_for_completion(self) -> List[CompletionMessage]:
        """Render every turn as plain text; contexts and errors are not sent."""
        out: List[CompletionMessage] = []
        for message in self._messages:
            if isinstance(message, UserTurn):
                out.append(CompletionMessage(role=CompletionRole.USER, body=message.body))
            elif isinstance(message, AssistantTurn):
                out.append(CompletionMessage(role=CompletionRole.ASSISTANT, body=message.body.text))
            else:
                raise TypeError(f"Unexpected message type {type(message).__name__}")
        return out

    # --- Submission -----------------------------------------------------------
    def submit(self, mode: SubmitMode | str = SubmitMode.SIMPLE) -> Optional[PendingCompletion]:
        """Start a submission run for the focused user turn.

        Must be called from within a running event loop. Returns the pending
        run, or None when no user turn is focused.
        """
        mode = SubmitMode.coerce(mode)
        focused_id = self._focused_id
        if focused_id is None:
            self.logger.error('core.chat_session.submit', message='unexpected state: no user message is focused.')
            return None
        loop = asyncio.get_running_loop()

        previous = self.pending_completion
        if previous is not None and not previous.done():
            previous.cancel('superseded')

        self.truncate(focused_id)
        assistant = self.push_new_assistant_message()
        pending = PendingCompletion(focused_id, assistant.id, mode)
        populate = self.populate_context_on_submit(focused_id, mode)

        self.logger.session_event('submit', {
            'message_id': focused_id,
            'assistant_id': assistant.id,
            'mode': mode.value,
            'model': self._model,
        })
        self.pending_completion = pending
        population = None
        if populate is not None:
            population = loop.create_task(populate())
            self._populations.add(population)
            population.add_done_callback(self._populations.discard)
        pending.task = loop.create_task(self._run_submission(pending, population))
        pending.task.add_done_callback(functools.partial(self._on_run_done, pending))
        pending.token.on_cancel(pending.task.cancel)
        return pending

    def _on_run_done(self, pending: PendingCompletion, task: asyncio.Task) -> None:
        if task.cancelled():
            # Also covers runs cancelled before their first step
            pending.outcome = pending.outcome or 'cancelled'
            pending.state = SubmissionState.SETTLED
            return
        exc = task.exception()
        if exc is not None:
            pending.outcome = 'error'
            pending.error = str(exc)
            pending.state = SubmissionState.SETTLED
            self.logger.error('core.chat_session.run', exc)

    def populate_context_on_submit(
        self,
        submitted_id: int,
        mode: SubmitMode,
    ) -> Optional[Callable[[], Awaitable[None]]]:
        """Attach any context the mode asks for; return the deferred population step.

        The step settles the context whether or not the run that started it
        survives; it only gives up when the context itself is gone.
        """
        if mode in (SubmitMode.SIMPLE, SubmitMode.CURRENT_FILE):
            return None
        if self._attacher is None:
            self.logger.error('core.chat_session.populate',
                              message='codebase mode requested but no retrieval service is configured')
            return None

        context_id = self._next_context_id.post_inc()
        user = self.user_message(submitted_id)
        user.contexts.append(CodebaseContext(id=context_id))
        self._notify('context_added', message_id=submitted_id, context_id=context_id)
        query = user.body
        return functools.partial(self._populate_codebase_context, submitted_id, context_id, query)

    async def _populate_codebase_context(
        self,
        submitted_id: int,
        context_id: int,
        query: str,
    ) -> None:
        try:
            excerpts = await self._attacher.fetch_excerpts(query)
        except Exception as e:
            self.logger.error('core.chat_session.populate', e)
            excerpts = []
        self._apply_context_population(submitted_id, context_id, excerpts)

    def _apply_context_population(
        self,
        submitted_id: int,
        context_id: int,
        excerpts: List[CodebaseExcerpt],
    ) -> bool:
        context = self._find_codebase_context(submitted_id, context_id)
        if context is None or not context.pending:
            self._drop_stale('context_population', message_id=submitted_id, context_id=context_id)
            return False
        context.populate(excerpts)
        self.logger.rag_event('context_populated', {
            'message_id': submitted_id,
            'context_id': context_id,
            'excerpts': [e.path for e in excerpts],
        })
        self._notify('context_populated', message_id=submitted_id, context_id=context_id)
        return True

    def _apply_assistant_body(self, pending: PendingCompletion, rendered: RenderedText) -> bool:
        assistant = self._find_assistant(pending.assistant_id)
        if assistant is None or pending.token.is_cancelled():
            self._drop_stale('assistant_chunk', message_id=pending.assistant_id)
            return False
        assistant.body = rendered
        self._notify('assistant_updated', message_id=assistant.id, text=rendered.text)
        return True

    def _drop_stale(self, what: str, **ids: Any) -> None:
        self.logger.session_event('stale_result_dropped', {'what': what, **ids})

    async def _run_submission(
        self,
        pending: PendingCompletion,
        population: Optional[asyncio.Task],
    ) -> None:
        error: Optional[str] = None
        try:
            if population is not None:
                pending.state = SubmissionState.POPULATING
                # Cancelling the run must not cancel the population underneath it
                await asyncio.shield(population)
            pending.token.raise_if_cancelled()
            if self._find_assistant(pending.assistant_id) is None:
                raise RunCancelled('assistant message removed')

            pending.state = SubmissionState.STREAMING
            outcome = await self._pipeline.run(
                self._model,
                self.render_for_completion(),
                functools.partial(self._apply_assistant_body, pending),
                pending.token,
            )
            if outcome.abandoned:
                raise RunCancelled(pending.token.reason() or 'abandoned')
            error = outcome.error
        except RunCancelled as e:
            pending.outcome = 'cancelled'
            pending.state = SubmissionState.SETTLED
            self._drop_stale('submission', message_id=pending.assistant_id, reason=e.reason)
            return
        except asyncio.CancelledError:
            pending.outcome = 'cancelled'
            pending.state = SubmissionState.SETTLED
            raise

        self._settle(pending, error)

    def _settle(self, pending: PendingCompletion, error: Optional[str]) -> None:
        assistant = self._find_assistant(pending.assistant_id)
        pending.state = SubmissionState.SETTLED
        if assistant is None:
            pending.outcome = 'cancelled'
            self._drop_stale('settlement', message_id=pending.assistant_id)
            return

        if error is not None:
            assistant.error = error
            pending.error = error
            self._notify('assistant_error', message_id=assistant.id, error=error)
        pending.outcome = 'error' if error is not None else 'success'

        focus = self._focused_id == pending.submitted_id
        new_turn = self.push_new_user_message(focus)
        self.logger.session_event('settled', {
            'assistant_id': assistant.id,
            'outcome': pending.outcome,
            'chars': len(assistant.body.text),
            'next_message_id': new_turn.id,
            'focused': focus,
        })
        self._notify('settled', message_id=assistant.id, outcome=pending.outcome)
