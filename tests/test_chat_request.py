"""Tests for chatstream.tasks.chat_request.ChatRequest driven by a scripted transport."""

from __future__ import annotations

import json
import threading

import pytest

from chatstream.config import ChatStreamConfig
from chatstream.errors import ErrorCode, TransportError
from chatstream.llm.types import FunctionDeclaration, Message, Role
from chatstream.tasks.base import (
    TaskState,
    _live_tasks,
    is_task_active,
    is_task_ready_to_destroy,
    is_task_still_valid,
)
from chatstream.tasks.chat_request import ChatRequest
from chatstream.tasks.dispatch import ThreadDispatcher
from chatstream.tasks.events import (
    EVENT_ERROR_RECEIVED,
    EVENT_PROCESS_COMPLETED,
    EVENT_PROGRESS_STARTED,
    EVENT_PROGRESS_UPDATED,
    EVENT_REQUEST_FAILED,
    EVENT_REQUEST_SENT,
)
from tests.mock_transports import (
    ScriptedTransport,
    activate_and_wait,
    delta_chunk,
    error_response,
    full_response,
    make_common,
    make_options,
    sse,
)


@pytest.fixture
def dispatcher():
    d = ThreadDispatcher(name="test-events")
    yield d
    d.shutdown(2.0)


@pytest.fixture
def transport():
    return ScriptedTransport()


class Recorder:
    """Collects every event a task delivers."""

    def __init__(self, task: ChatRequest) -> None:
        self.events = []
        task.subscribe("*", self.events.append)

    @property
    def types(self) -> list[str]:
        return [e.event_type for e in self.events]

    def of(self, event_type: str):
        return [e for e in self.events if e.event_type == event_type]


def make_task(transport, dispatcher, *, stream=True, **kwargs) -> ChatRequest:
    return ChatRequest.send_message(
        "Capital of France?",
        common=kwargs.pop("common", make_common()),
        options=make_options(stream=stream),
        transport=transport,
        dispatcher=dispatcher,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

class TestNonStreaming:

    def test_started_then_completed(self, transport, dispatcher):
        task = make_task(transport, dispatcher, stream=False)
        rec = Recorder(task)

        assert activate_and_wait(task)
        assert transport.on_progress is None

        transport.complete(json.dumps(full_response("Paris")))
        assert task.wait(2.0)

        assert rec.types == [EVENT_REQUEST_SENT, EVENT_PROGRESS_STARTED, EVENT_PROCESS_COMPLETED]
        assert rec.of(EVENT_PROGRESS_STARTED)[0].response.content == "Paris"
        assert rec.of(EVENT_PROCESS_COMPLETED)[0].response.content == "Paris"
        assert task.outcome is TaskState.COMPLETED
        assert task.state is TaskState.DESTROYED
        assert task.response.content == "Paris"

    def test_request_shape(self, transport, dispatcher):
        common = make_common(endpoint="https://api.example.com", user="u-1")
        task = make_task(transport, dispatcher, stream=False, common=common)
        activate_and_wait(task)

        request = transport.request
        assert request.method == "POST"
        assert request.url == "https://api.example.com/v1/chat/completions"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert transport.body["messages"] == [{"role": "user", "content": "Capital of France?"}]
        assert transport.body["stream"] is False
        assert transport.body["user"] == "u-1"
        # The caller's options are not modified by activation.
        assert common.endpoint == "https://api.example.com"

    def test_api_key_from_environment(self, transport, dispatcher, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_TEST_KEY", "sk-env")
        common = make_common(api_key="", api_key_env="CHATSTREAM_TEST_KEY")
        task = make_task(transport, dispatcher, common=common)
        assert activate_and_wait(task)
        assert transport.request.headers["Authorization"] == "Bearer sk-env"

    def test_body_containing_data_prefix(self, transport, dispatcher):
        task = make_task(transport, dispatcher, stream=False)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete(json.dumps(full_response("say data: hello")))
        assert task.wait(2.0)
        assert rec.of(EVENT_PROCESS_COMPLETED)[0].response.content == "say data: hello"


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStreaming:

    def test_started_once_then_updates(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)

        chunks = [
            delta_chunk(role="assistant"),
            delta_chunk(content="Hi"),
            delta_chunk(content=" there"),
        ]
        transport.progress(sse(*chunks[:1]))
        transport.progress(sse(*chunks[:2]))
        transport.progress(sse(*chunks))
        transport.complete(sse(*chunks, done=True))
        assert task.wait(2.0)

        assert rec.types == [
            EVENT_REQUEST_SENT,
            EVENT_PROGRESS_STARTED,
            EVENT_PROGRESS_UPDATED,
            EVENT_PROGRESS_UPDATED,
            EVENT_PROCESS_COMPLETED,
        ]
        updates = [e.response.content for e in rec.of(EVENT_PROGRESS_UPDATED)]
        assert updates == ["Hi", "Hi there"]
        final = rec.of(EVENT_PROCESS_COMPLETED)[0].response
        assert final.content == "Hi there"
        assert final.choices[0].message.role is Role.ASSISTANT
        assert len(final.choices) == 1

    def test_state_moves_to_streaming(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        activate_and_wait(task)
        assert task.state is TaskState.SENDING
        transport.progress(sse(delta_chunk(content="x")))
        assert task.state is TaskState.STREAMING

    def test_events_carry_snapshots(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)

        transport.progress(sse(delta_chunk(content="a")))
        transport.complete(sse(delta_chunk(content="a"), delta_chunk(content="b")))
        assert task.wait(2.0)

        assert rec.of(EVENT_PROGRESS_STARTED)[0].response.content == "a"
        assert rec.of(EVENT_PROCESS_COMPLETED)[0].response.content == "ab"

    def test_completion_without_ticks_still_starts(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete(sse(delta_chunk(content="late"), done=True))
        assert task.wait(2.0)
        assert rec.types == [EVENT_REQUEST_SENT, EVENT_PROGRESS_STARTED, EVENT_PROCESS_COMPLETED]

    def test_partial_fragment_mid_stream_is_skipped(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)

        full = sse(delta_chunk(content="a"), delta_chunk(content="b"))
        transport.progress(full[: len(full) - 10])
        transport.complete(full)
        assert task.wait(2.0)

        assert rec.of(EVENT_PROGRESS_STARTED)[0].response.content == "a"
        assert rec.of(EVENT_PROCESS_COMPLETED)[0].response.content == "ab"

    def test_function_call_stream(self, transport, dispatcher):
        fn = FunctionDeclaration(
            name="get_weather",
            parameters={"properties": {"city": {"type": "string"}}},
        )
        task = ChatRequest.send_message(
            "weather in Paris?",
            [fn],
            make_common(),
            make_options(),
            transport=transport,
            dispatcher=dispatcher,
        )
        rec = Recorder(task)
        activate_and_wait(task)
        assert transport.body["functions"][0]["name"] == "get_weather"

        transport.complete(sse(
            delta_chunk(role="assistant", function_call={"name": "get_weather", "arguments": ""}),
            delta_chunk(function_call={"arguments": '{"city": '}),
            delta_chunk(function_call={"arguments": '"Paris"}'}),
            done=True,
        ))
        assert task.wait(2.0)

        fc = rec.of(EVENT_PROCESS_COMPLETED)[0].response.choices[0].message.function_call
        assert fc.name == "get_weather"
        assert fn.validate_arguments(fc.arguments) == (True, None)

    def test_tick_dropped_while_lock_is_held(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)

        acquired, release = threading.Event(), threading.Event()

        def hold():
            with task._lock:
                acquired.set()
                release.wait(2.0)

        holder = threading.Thread(target=hold)
        holder.start()
        try:
            assert acquired.wait(2.0)
            transport.progress(sse(delta_chunk(content="dropped")))
        finally:
            release.set()
            holder.join(2.0)

        dispatcher.flush(2.0)
        assert EVENT_PROGRESS_STARTED not in rec.types
        assert task.state is TaskState.SENDING

        transport.progress(sse(delta_chunk(content="kept")))
        dispatcher.flush(2.0)
        assert rec.of(EVENT_PROGRESS_STARTED)[0].response.content == "kept"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:

    def test_error_received(self, transport, dispatcher):
        task = make_task(transport, dispatcher, stream=False)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete(json.dumps(error_response("bad key", "401", "auth")))
        assert task.wait(2.0)

        assert rec.types == [EVENT_REQUEST_SENT, EVENT_ERROR_RECEIVED]
        error = rec.of(EVENT_ERROR_RECEIVED)[0].response.error
        assert (error.message, error.code, error.type) == ("bad key", "401", "auth")
        assert task.outcome is TaskState.FAILED

    def test_streamed_error_before_any_tick(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.progress(json.dumps(error_response()))
        transport.complete(json.dumps(error_response()))
        assert task.wait(2.0)
        assert rec.types == [EVENT_REQUEST_SENT, EVENT_ERROR_RECEIVED]

    def test_transport_failure(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete("", was_successful=False)
        assert task.wait(2.0)

        failed = rec.of(EVENT_REQUEST_FAILED)
        assert len(failed) == 1
        assert failed[0].error_code == ErrorCode.TRANSPORT_ERROR
        assert task.outcome is TaskState.FAILED
        assert transport.closed

    def test_empty_body(self, transport, dispatcher):
        task = make_task(transport, dispatcher, stream=False)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete("")
        assert task.wait(2.0)
        assert rec.of(EVENT_REQUEST_FAILED)[0].reason == "Empty response"

    @pytest.mark.parametrize("stream", [False, True])
    def test_whitespace_body(self, transport, dispatcher, stream):
        task = make_task(transport, dispatcher, stream=stream)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete("   \n\n")
        assert task.wait(2.0)

        assert rec.types == [EVENT_REQUEST_SENT, EVENT_REQUEST_FAILED]
        failed = rec.of(EVENT_REQUEST_FAILED)[0]
        assert failed.reason == "Empty response"
        assert failed.error_code == ErrorCode.TRANSPORT_ERROR

    def test_done_sentinel_only(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete("data: [DONE]\n\n")
        assert task.wait(2.0)

        assert rec.types == [EVENT_REQUEST_SENT, EVENT_REQUEST_FAILED]
        assert rec.of(EVENT_REQUEST_FAILED)[0].error_code == ErrorCode.PROTOCOL_ERROR
        assert task.outcome is TaskState.FAILED

    def test_malformed_final_payload(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)
        transport.complete('data: {"choices": [')
        assert task.wait(2.0)
        assert rec.of(EVENT_REQUEST_FAILED)[0].error_code == ErrorCode.PROTOCOL_ERROR
        assert EVENT_PROCESS_COMPLETED not in rec.types

    def test_transport_cannot_start(self, dispatcher):
        transport = ScriptedTransport(start_ok=False)
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        assert activate_and_wait(task)
        assert task.wait(2.0)
        assert rec.types == [EVENT_REQUEST_FAILED]
        assert rec.events[0].error_code == ErrorCode.TRANSPORT_ERROR

    def test_transport_start_error(self, dispatcher):
        transport = ScriptedTransport(start_error=TransportError("socket refused"))
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        assert activate_and_wait(task)
        assert task.wait(2.0)

        assert rec.types == [EVENT_REQUEST_FAILED]
        assert rec.events[0].error_code == ErrorCode.TRANSPORT_ERROR
        assert "socket refused" in rec.events[0].reason
        assert task.outcome is TaskState.FAILED


class TestValidation:

    @pytest.mark.parametrize(
        "common_kwargs, reason",
        [
            ({"endpoint": ""}, "Invalid endpoint"),
            ({"api_key": ""}, "Invalid API Key"),
        ],
    )
    def test_invalid_options(self, transport, dispatcher, common_kwargs, reason):
        task = make_task(transport, dispatcher, common=make_common(**common_kwargs))
        rec = Recorder(task)
        assert task.activate() is False
        assert task.wait(2.0)

        assert rec.types == [EVENT_REQUEST_FAILED]
        assert rec.events[0].error_code == ErrorCode.VALIDATION_ERROR
        assert rec.events[0].reason == reason
        assert transport.request is None
        assert task.outcome is TaskState.FAILED

    def test_no_messages(self, transport, dispatcher):
        task = ChatRequest.send_messages(
            [], common=make_common(), transport=transport, dispatcher=dispatcher
        )
        rec = Recorder(task)
        assert task.activate() is False
        assert task.wait(2.0)
        assert rec.events[0].reason == "Invalid Messages"

    def test_invalid_function_schema(self, transport, dispatcher):
        task = ChatRequest.send_message(
            "hi",
            [FunctionDeclaration(name="bad", parameters={"type": 42})],
            make_common(),
            transport=transport,
            dispatcher=dispatcher,
        )
        rec = Recorder(task)
        assert task.activate() is True
        assert task.wait(2.0)
        assert rec.types == [EVENT_REQUEST_FAILED]
        assert rec.events[0].error_code == ErrorCode.VALIDATION_ERROR
        # The body is built before the transport is handed anything.
        assert transport.request is None

    def test_activate_twice(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        assert activate_and_wait(task)
        assert task.activate() is False

    def test_failed_task_cannot_be_reactivated(self, transport, dispatcher):
        task = make_task(transport, dispatcher, common=make_common(api_key=""))
        assert task.activate() is False
        task.common.api_key = "sk-test"
        assert task.activate() is False


# ---------------------------------------------------------------------------
# Cancellation and lifecycle
# ---------------------------------------------------------------------------

class TestStop:

    def test_stop_suppresses_further_events(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        rec = Recorder(task)
        activate_and_wait(task)

        transport.progress(sse(delta_chunk(content="a")))
        dispatcher.flush(2.0)
        assert rec.types == [EVENT_REQUEST_SENT, EVENT_PROGRESS_STARTED]

        task.stop()
        transport.progress(sse(delta_chunk(content="a"), delta_chunk(content="b")))
        transport.complete(sse(delta_chunk(content="a"), delta_chunk(content="b"), done=True))
        assert task.wait(2.0)

        assert rec.types == [EVENT_REQUEST_SENT, EVENT_PROGRESS_STARTED]
        assert transport.cancel_count == 1
        assert task.cancelled
        assert task.outcome is None
        assert task.state is TaskState.DESTROYED

    def test_queued_events_dropped_after_stop(self, transport):
        gate = threading.Event()
        dispatcher = ThreadDispatcher(name="gated-events")
        dispatcher.post(gate.wait, 2.0)
        try:
            task = make_task(transport, dispatcher)
            rec = Recorder(task)
            activate_and_wait(task)
            transport.progress(sse(delta_chunk(content="a")))
            task.stop()
            gate.set()
            assert task.wait(2.0)
            # request_sent is not a response event and still arrives.
            assert rec.types == [EVENT_REQUEST_SENT]
        finally:
            gate.set()
            dispatcher.shutdown(2.0)

    def test_stop_before_activate_is_noop(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        task.stop()
        assert task.state is TaskState.CREATED
        assert transport.cancel_count == 0

    def test_stop_is_idempotent(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        activate_and_wait(task)
        task.stop()
        task.stop()
        assert transport.cancel_count == 1


class TestLifecycle:

    def test_status_helpers(self, transport, dispatcher):
        assert not is_task_active(None)
        assert not is_task_ready_to_destroy(None)
        assert not is_task_still_valid(None)

        task = make_task(transport, dispatcher)
        assert is_task_still_valid(task)
        activate_and_wait(task)
        assert is_task_active(task)

        transport.complete(sse(delta_chunk(content="x"), done=True))
        assert task.wait(2.0)
        assert not is_task_active(task)
        assert is_task_ready_to_destroy(task)
        assert not is_task_still_valid(task)

    def test_live_set_tracks_active_tasks(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        assert task not in _live_tasks
        activate_and_wait(task)
        assert task in _live_tasks
        transport.complete(sse(delta_chunk(content="x"), done=True))
        assert task.wait(2.0)
        assert task not in _live_tasks

    def test_unsubscribe(self, transport, dispatcher):
        task = make_task(transport, dispatcher, stream=False)
        seen = []
        task.subscribe(EVENT_PROCESS_COMPLETED, seen.append)
        task.unsubscribe(EVENT_PROCESS_COMPLETED, seen.append)
        activate_and_wait(task)
        transport.complete(json.dumps(full_response("x")))
        assert task.wait(2.0)
        assert seen == []

    def test_unknown_event_type(self, transport, dispatcher):
        task = make_task(transport, dispatcher)
        with pytest.raises(ValueError):
            task.subscribe("progress_finished", print)

    def test_failing_subscriber_does_not_break_delivery(self, transport, dispatcher):
        task = make_task(transport, dispatcher, stream=False)
        seen = []

        def boom(event):
            raise RuntimeError("subscriber bug")

        task.subscribe(EVENT_PROCESS_COMPLETED, boom)
        task.subscribe(EVENT_PROCESS_COMPLETED, seen.append)
        activate_and_wait(task)
        transport.complete(json.dumps(full_response("x")))
        assert task.wait(2.0)
        assert len(seen) == 1

    def test_from_config_uses_routes(self, transport, dispatcher):
        config = ChatStreamConfig()
        config.common.api_key = "sk-test"
        config.common.endpoint = "http://localhost:8080/"
        config.chat.model = "local-llama"
        config.routes = {"local-llama": "api/chat"}

        task = ChatRequest.from_config(
            config,
            [Message(Role.USER, "hi")],
            transport=transport,
            dispatcher=dispatcher,
        )
        activate_and_wait(task)
        assert transport.request.url == "http://localhost:8080/api/chat"
        assert transport.body["model"] == "local-llama"

    def test_legacy_model_endpoint(self, transport, dispatcher):
        task = ChatRequest.send_message(
            "Once upon a time",
            common=make_common(),
            options=make_options(model="text-davinci-003", stream=False),
            transport=transport,
            dispatcher=dispatcher,
        )
        rec = Recorder(task)
        activate_and_wait(task)
        assert transport.request.url.endswith("/v1/completions")
        assert transport.body["prompt"] == "Once upon a time"

        transport.complete(json.dumps({"id": "cmpl-1", "choices": [{"index": 0, "text": " there was"}]}))
        assert task.wait(2.0)
        assert rec.of(EVENT_PROCESS_COMPLETED)[0].response.content == " there was"
