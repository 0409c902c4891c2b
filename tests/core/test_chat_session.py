from __future__ import annotations

import asyncio
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from base_classes import CompletionProvider, FileLoader, RetrievalService, SearchResult
from contexts.codebase_context import CodebaseContext
from core.chat_session import AssistantChat, SubmissionState
from core.messages import AssistantTurn, ContextNotFoundError, TurnNotFoundError, UserTurn
from providers.mock_provider import MockProvider


class GatedProvider(CompletionProvider):
    """Streams 'first ', then waits for release() before streaming 'second'."""

    def __init__(self):
        self.release = None
        self.calls = 0

    def default_model(self):
        return 'gated'

    def available_models(self):
        return ['gated']

    async def complete(self, model, messages, tools, temperature):
        self.calls += 1
        if self.release is None:
            self.release = asyncio.Event()
        return self._stream()

    async def _stream(self):
        yield 'first '
        await self.release.wait()
        yield 'second'


class FakeRetrieval(RetrievalService):
    def __init__(self, root, names, gate=False):
        self.root = root
        self.names = names
        self.gate = asyncio.Event() if gate else None
        self.queries = []

    async def search(self, query, top_k):
        self.queries.append(query)
        if self.gate is not None:
            await self.gate.wait()
        return [SearchResult(root=self.root, path=n, range=(0, 4), score=0.5) for n in self.names]


class DictLoader(FileLoader):
    def __init__(self, files):
        self.files = files

    async def load(self, path):
        return self.files[path]


async def _until(predicate, limit=200):
    for _ in range(limit):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError('condition never became true')


def _roles(chat):
    return [m.role for m in chat.messages]


def _ids(chat):
    return [m.id for m in chat.messages]


def test_new_session_has_one_focused_user_turn():
    chat = AssistantChat(MockProvider())
    assert _ids(chat) == [0]
    assert isinstance(chat.last_message, UserTurn)
    assert chat.focused_message_id == 0
    assert chat.status is SubmissionState.EDITING
    assert chat.model == 'mock'


def test_simple_submit_streams_and_appends_a_focused_user_turn():
    provider = MockProvider(script=[['Hel', 'lo', ' world']])
    chat = AssistantChat(provider)
    updates = []
    chat.subscribe(lambda event, data: updates.append(data['text']) if event == 'assistant_updated' else None)
    chat.set_text(0, 'hello')

    async def scenario():
        pending = chat.submit()
        assert chat.status is SubmissionState.SUBMITTED
        return await pending

    assert asyncio.run(scenario()) == 'success'
    assert updates == ['Hel', 'Hello', 'Hello world']
    assert _roles(chat) == ['user', 'assistant', 'user']
    assert chat.assistant_message(1).text == 'Hello world'
    assert chat.assistant_message(1).error is None
    assert chat.focused_message_id == 2
    assert chat.user_message(0).contexts == []
    assert provider.requests[0]['messages'] == [
        {'role': 'user', 'content': 'hello'},
        {'role': 'assistant', 'content': ''},
    ]
    assert chat.status is SubmissionState.EDITING
    assert chat.last_outcome == 'success'


def test_mid_stream_failure_keeps_partial_text_and_records_error():
    chat = AssistantChat(MockProvider(script=[['partial ', RuntimeError('stream broke')]]))
    errors = []
    chat.subscribe(lambda event, data: errors.append(data['error']) if event == 'assistant_error' else None)

    async def scenario():
        return await chat.submit()

    assert asyncio.run(scenario()) == 'error'
    assistant = chat.assistant_message(1)
    assert assistant.text == 'partial '
    assert assistant.error == 'stream broke'
    assert errors == ['stream broke']
    assert _roles(chat) == ['user', 'assistant', 'user']


def test_open_failure_records_error_on_empty_turn():
    chat = AssistantChat(MockProvider(open_error=ConnectionError('refused')))

    async def scenario():
        return await chat.submit()

    assert asyncio.run(scenario()) == 'error'
    assert chat.assistant_message(1).text == ''
    assert chat.assistant_message(1).error == 'refused'
    assert chat.focused_message_id == 2


def test_submit_without_focus_does_nothing():
    chat = AssistantChat(MockProvider())
    chat.blur()
    assert chat.submit() is None
    assert _ids(chat) == [0]


def test_resubmitting_an_earlier_turn_truncates_and_never_reuses_ids():
    chat = AssistantChat(MockProvider(script=[['one'], ['two']]))

    async def scenario():
        await chat.submit()
        chat.focus(0)
        chat.set_text(0, 'edited')
        await chat.submit()

    asyncio.run(scenario())
    assert _ids(chat) == [0, 3, 4]
    assert chat.assistant_message(3).text == 'two'
    with pytest.raises(TurnNotFoundError):
        chat.assistant_message(1)


def test_turns_alternate_and_end_with_a_user_turn():
    chat = AssistantChat(MockProvider())

    async def scenario():
        for text in ('a', 'b', 'c'):
            chat.set_text(chat.focused_message_id, text)
            await chat.submit()

    asyncio.run(scenario())
    roles = _roles(chat)
    assert roles == ['user', 'assistant'] * 3 + ['user']
    assert isinstance(chat.last_message, UserTurn)


def test_truncate_is_idempotent_and_ignores_unknown_ids():
    chat = AssistantChat(MockProvider())

    async def scenario():
        await chat.submit()
        chat.set_text(2, 'again')
        await chat.submit()

    asyncio.run(scenario())
    assert _ids(chat) == [0, 1, 2, 3, 4]
    chat.truncate(1)
    chat.truncate(1)
    assert _ids(chat) == [0, 1]
    chat.truncate(99)
    assert _ids(chat) == [0, 1]
    # Focused turn 4 was removed
    assert chat.focused_message_id is None


def test_truncate_during_stream_cancels_the_run():
    provider = GatedProvider()
    chat = AssistantChat(provider)

    async def scenario():
        pending = chat.submit()
        await _until(lambda: chat.has_message(1) and chat.assistant_message(1).text == 'first ')
        assert chat.status is SubmissionState.STREAMING
        chat.truncate(0)
        provider.release.set()
        return await pending

    assert asyncio.run(scenario()) == 'cancelled'
    assert _ids(chat) == [0]
    assert chat.status is SubmissionState.EDITING


def test_new_submit_supersedes_an_unfinished_run():
    provider = GatedProvider()
    chat = AssistantChat(provider)

    async def scenario():
        first = chat.submit()
        await _until(lambda: chat.assistant_message(1).text == 'first ')
        second = chat.submit()
        provider.release.set()
        return await first, await second

    first, second = asyncio.run(scenario())
    assert first == 'cancelled' and second == 'success'
    assert _ids(chat) == [0, 2, 3]
    assert chat.assistant_message(2).text == 'first second'


def test_focus_moved_away_during_run_is_left_alone():
    provider = GatedProvider()
    chat = AssistantChat(provider)

    async def scenario():
        pending = chat.submit()
        await _until(lambda: chat.assistant_message(1).text == 'first ')
        chat.blur()
        provider.release.set()
        await pending

    asyncio.run(scenario())
    assert _roles(chat) == ['user', 'assistant', 'user']
    assert chat.focused_message_id is None


def test_codebase_submit_attaches_then_populates_context(tmp_path):
    path = os.path.join(str(tmp_path), 'a.py')
    retrieval = FakeRetrieval(str(tmp_path), ['a.py'])
    chat = AssistantChat(MockProvider(), retrieval=retrieval, loader=DictLoader({path: 'def a(): pass'}))
    events = []
    chat.subscribe(lambda event, data: events.append(event))
    chat.set_text(0, 'where is a')

    async def scenario():
        pending = chat.submit('codebase')
        context = chat.codebase_context(0, 0)
        assert context.pending and context.excerpts == []
        return await pending

    assert asyncio.run(scenario()) == 'success'
    assert retrieval.queries == ['where is a']
    context = chat.codebase_context(0, 0)
    assert isinstance(context, CodebaseContext)
    assert not context.pending
    assert [(e.path, e.text, e.score) for e in context.excerpts] == [('a.py', 'def ', 0.5)]
    assert events.index('context_added') < events.index('context_populated') < events.index('assistant_updated')
    with pytest.raises(ContextNotFoundError):
        chat.codebase_context(0, 5)


def test_codebase_mode_without_retrieval_attaches_nothing():
    chat = AssistantChat(MockProvider())

    async def scenario():
        return await chat.submit('codebase')

    assert asyncio.run(scenario()) == 'success'
    assert chat.user_message(0).contexts == []


def test_truncating_a_turn_mid_search_cancels_the_run(tmp_path):
    retrieval = FakeRetrieval(str(tmp_path), ['a.py'], gate=False)
    provider = MockProvider()
    chat = AssistantChat(provider, retrieval=retrieval, loader=DictLoader({}))

    async def scenario():
        await chat.submit()
        retrieval.gate = asyncio.Event()
        chat.set_text(2, 'search this')
        pending = chat.submit('codebase')
        await asyncio.sleep(0)
        chat.truncate(0)
        retrieval.gate.set()
        return await pending

    assert asyncio.run(scenario()) == 'cancelled'
    assert _ids(chat) == [0]
    assert len(provider.requests) == 1


def test_model_can_be_switched_to_an_available_model():
    chat = AssistantChat(MockProvider(models=['mock', 'mock-echo']))
    seen = []
    chat.subscribe(lambda event, data: seen.append(data.get('model')) if event == 'model_changed' else None)
    chat.model = 'mock-echo'
    assert chat.model == 'mock-echo'
    assert seen == ['mock-echo']
    with pytest.raises(ValueError):
        chat.model = 'nope'
    assert chat.model == 'mock-echo'


def test_messages_are_snapshots_and_lookups_fail_fast():
    chat = AssistantChat(MockProvider())
    chat.set_text(0, 'original')
    snapshot = chat.messages
    snapshot[0].body = 'changed'
    assert chat.user_message(0).body == 'original'
    with pytest.raises(TurnNotFoundError):
        chat.user_message(42)
    with pytest.raises(TurnNotFoundError):
        chat.focus(42)
    assert isinstance(chat.push_new_assistant_message(), AssistantTurn)


def test_broken_listener_does_not_break_submission():
    chat = AssistantChat(MockProvider(script=[['ok']]))

    def broken(event, data):
        raise RuntimeError('observer bug')

    unsubscribe = chat.subscribe(broken)

    async def scenario():
        return await chat.submit()

    assert asyncio.run(scenario()) == 'success'
    unsubscribe()
    assert chat.assistant_message(1).text == 'ok'


def test_late_results_for_missing_targets_are_not_applied():
    chat = AssistantChat(MockProvider())
    assert chat._apply_context_population(7, 0, []) is False
    chat.user_message(0).contexts.append(CodebaseContext(id=3))
    assert chat._apply_context_population(0, 3, []) is True
    assert chat._apply_context_population(0, 3, []) is False
    assert chat.codebase_context(0, 3).summary() == 'No relevant excerpts found.'
    # A context is populated at most once
    with pytest.raises(RuntimeError):
        chat.codebase_context(0, 3).populate([])


def _pending_flags(chat, message_id):
    return [(c.id, c.pending) for c in chat.user_message(message_id).contexts]


def test_resubmitting_mid_search_still_settles_the_first_context(tmp_path):
    path = os.path.join(str(tmp_path), 'a.py')
    retrieval = FakeRetrieval(str(tmp_path), ['a.py'])
    chat = AssistantChat(MockProvider(), retrieval=retrieval, loader=DictLoader({path: 'def a(): pass'}))
    chat.set_text(0, 'where is a')

    async def scenario():
        retrieval.gate = asyncio.Event()
        first = chat.submit('codebase')
        await asyncio.sleep(0)
        second = chat.submit('simple')
        retrieval.gate.set()
        outcomes = (await first, await second)
        await _until(lambda: not chat.codebase_context(0, 0).pending)
        return outcomes

    assert asyncio.run(scenario()) == ('cancelled', 'success')
    assert _pending_flags(chat, 0) == [(0, False)]
    assert [e.path for e in chat.codebase_context(0, 0).excerpts] == ['a.py']
    assert _ids(chat) == [0, 2, 3]


def test_truncating_to_the_submitted_turn_mid_search_still_settles_its_context(tmp_path):
    retrieval = FakeRetrieval(str(tmp_path), ['gone.py'])
    provider = MockProvider()
    chat = AssistantChat(provider, retrieval=retrieval, loader=DictLoader({}))
    populated = []
    chat.subscribe(lambda event, data: populated.append(data['context_id']) if event == 'context_populated' else None)

    async def scenario():
        retrieval.gate = asyncio.Event()
        pending = chat.submit('codebase')
        await asyncio.sleep(0)
        chat.truncate(0)
        retrieval.gate.set()
        outcome = await pending
        await _until(lambda: not chat.codebase_context(0, 0).pending)
        return outcome

    assert asyncio.run(scenario()) == 'cancelled'
    assert _ids(chat) == [0]
    assert _pending_flags(chat, 0) == [(0, False)]
    assert chat.codebase_context(0, 0).excerpts == []
    assert populated == [0]
    assert provider.requests == []


def test_context_ids_keep_increasing_across_truncation(tmp_path):
    retrieval = FakeRetrieval(str(tmp_path), [])
    chat = AssistantChat(MockProvider(), retrieval=retrieval, loader=DictLoader({}))

    async def scenario():
        await chat.submit('codebase')
        chat.set_text(2, 'second question')
        await chat.submit('codebase')
        chat.truncate(0)
        chat.focus(0)
        await chat.submit('codebase')

    asyncio.run(scenario())
    # Context 1 lived on the removed turn 2 and is never handed out again
    assert [c.id for c in chat.user_message(0).contexts] == [0, 2]
    with pytest.raises(ContextNotFoundError):
        chat.codebase_context(0, 1)


def test_codebase_submit_drops_a_failed_load_and_keeps_search_order(tmp_path):
    names = ['one.py', 'two.py', 'three.py', 'four.py']
    files = {os.path.join(str(tmp_path), n): f'{n}!' for n in names if n != 'two.py'}
    retrieval = FakeRetrieval(str(tmp_path), names)
    chat = AssistantChat(MockProvider(), retrieval=retrieval, loader=DictLoader(files))
    chat.set_text(0, 'find things')

    async def scenario():
        return await chat.submit('codebase')

    assert asyncio.run(scenario()) == 'success'
    context = chat.codebase_context(0, 0)
    assert context.pending is False
    assert [e.path for e in context.excerpts] == ['one.py', 'three.py', 'four.py']
    assert chat.assistant_message(1).error is None
