from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from ebs_tagger.src.dispatcher import (
    ALL_NAMESPACES,
    NamespaceWatcher,
    WatchDispatcher,
    parse_namespaces,
)


def make_pvc(name: str, resource_version: str = "1", namespace: str = "ns1") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            resource_version=resource_version,
            annotations={},
        ),
        spec=SimpleNamespace(volume_name=f"pv-{name}"),
        status=SimpleNamespace(phase="Bound"),
    )


def _fake_core_api(
    resource_versions: list[str] | None = None,
    item_sets: list[list[Any]] | None = None,
) -> SimpleNamespace:
    versions = list(resource_versions or ["100"])
    items = list(item_sets or [[]])
    calls: list[dict[str, Any]] = []

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        calls.append(kwargs)
        version = versions.pop(0) if len(versions) > 1 else versions[0]
        listed = items.pop(0) if len(items) > 1 else items[0]
        return SimpleNamespace(metadata=SimpleNamespace(resource_version=version), items=listed)

    return SimpleNamespace(
        list_namespaced_persistent_volume_claim=fake_list,
        list_persistent_volume_claim_for_all_namespaces=fake_list,
        calls=calls,
    )


class RecordingHandler:
    def __init__(self, fail_names: set[str] | None = None) -> None:
        self.events: list[tuple[str, str]] = []
        self.fail_names = fail_names or set()

    def __call__(self, event_type: str, obj: Any) -> None:
        self.events.append((event_type, obj.metadata.name))
        if obj.metadata.name in self.fail_names:
            raise RuntimeError("handler exploded")


def _make_watcher(
    core_api: Any,
    handler: RecordingHandler,
    namespace: str = "ns1",
) -> NamespaceWatcher:
    return NamespaceWatcher(
        core_api=core_api,
        namespace=namespace,
        handler=handler,
        watch_timeout_seconds=1,
    )


def _fake_wait(wait_values: list[float]) -> Any:
    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    return fake_wait


# ---------------------------------------------------------------------------
# Namespace parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, [ALL_NAMESPACES]),
        ("", [ALL_NAMESPACES]),
        (" , ", [ALL_NAMESPACES]),
        ("ns1", ["ns1"]),
        ("ns1, ns2,ns1", ["ns1", "ns2"]),
    ],
)
def test_parse_namespaces(raw: str | None, expected: list[str]) -> None:
    assert parse_namespaces(raw) == expected


# ---------------------------------------------------------------------------
# NamespaceWatcher
# ---------------------------------------------------------------------------


def test_initial_list_is_dispatched_before_watch_events() -> None:
    handler = RecordingHandler()
    core_api = _fake_core_api(item_sets=[[make_pvc("pvc-a"), make_pvc("pvc-b")]])
    watcher = _make_watcher(core_api, handler)
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return iter(
                [
                    {"type": "MODIFIED", "object": make_pvc("pvc-a", "101")},
                    {"type": "DELETED", "object": make_pvc("pvc-b", "102")},
                    {"type": "ADDED", "object": make_pvc("pvc-c", "103")},
                ]
            )
        watcher.request_stop()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("ebs_tagger.src.dispatcher.watch.Watch", return_value=mock_watcher):
        watcher.run()

    assert handler.events == [
        ("ADDED", "pvc-a"),
        ("ADDED", "pvc-b"),
        ("MODIFIED", "pvc-a"),
        ("DELETED", "pvc-b"),
        ("ADDED", "pvc-c"),
    ]
    first_call, second_call = mock_watcher.stream.call_args_list
    assert first_call.kwargs["resource_version"] == "100"
    assert first_call.kwargs["namespace"] == "ns1"
    assert second_call.kwargs["resource_version"] == "103"


def test_all_namespaces_uses_cluster_wide_list() -> None:
    handler = RecordingHandler()
    core_api = _fake_core_api()
    watcher = _make_watcher(core_api, handler, namespace=ALL_NAMESPACES)
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        watcher.request_stop()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("ebs_tagger.src.dispatcher.watch.Watch", return_value=mock_watcher):
        watcher.run()

    assert core_api.calls == [{}]
    assert "namespace" not in mock_watcher.stream.call_args.kwargs
    assert watcher.label == "<all>"


def test_handler_exception_does_not_stop_the_stream() -> None:
    handler = RecordingHandler(fail_names={"pvc-a"})
    watcher = _make_watcher(_fake_core_api(), handler)
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = [
        iter(
            [
                {"type": "ADDED", "object": make_pvc("pvc-a", "101")},
                {"type": "ADDED", "object": make_pvc("pvc-b", "102")},
            ]
        ),
        _stop_and_return_empty(watcher),
    ]

    with patch("ebs_tagger.src.dispatcher.watch.Watch", return_value=mock_watcher):
        watcher.run()

    assert handler.events == [("ADDED", "pvc-a"), ("ADDED", "pvc-b")]
    assert mock_watcher.stream.call_count == 2


def _stop_and_return_empty(watcher: NamespaceWatcher) -> Any:
    class _StopOnIter:
        def __iter__(self) -> Any:
            watcher.request_stop()
            return iter([])

    return _StopOnIter()


def test_410_relists_and_resumes_from_new_resource_version() -> None:
    handler = RecordingHandler()
    core_api = _fake_core_api(
        resource_versions=["100", "200"],
        item_sets=[[make_pvc("pvc-a")], [make_pvc("pvc-a"), make_pvc("pvc-new")]],
    )
    watcher = _make_watcher(core_api, handler)
    resource_versions_seen: list[Any] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        resource_versions_seen.append(kwargs.get("resource_version"))
        if call_count == 1:
            raise ApiException(status=410, reason="Gone")
        watcher.request_stop()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("ebs_tagger.src.dispatcher.watch.Watch", return_value=mock_watcher):
        watcher.run()

    assert resource_versions_seen == ["100", "200"]
    assert handler.events == [("ADDED", "pvc-a"), ("ADDED", "pvc-a"), ("ADDED", "pvc-new")]


def test_exits_fast_on_initial_list_rbac_denied() -> None:
    def fake_list(**kwargs: Any) -> SimpleNamespace:
        raise ApiException(status=403, reason="forbidden")

    core_api = SimpleNamespace(list_namespaced_persistent_volume_claim=fake_list)
    watcher = _make_watcher(core_api, RecordingHandler())
    watch_factory = MagicMock()

    with patch("ebs_tagger.src.dispatcher.watch.Watch", watch_factory):
        watcher.run()

    watch_factory.assert_not_called()


def test_exits_fast_on_watch_rbac_denied() -> None:
    watcher = _make_watcher(_fake_core_api(), RecordingHandler())
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    with (
        patch("ebs_tagger.src.dispatcher.watch.Watch", return_value=mock_watcher),
        patch(
            "ebs_tagger.src.dispatcher.threading.Event.wait",
            side_effect=_fake_wait(wait_values),
        ),
    ):
        watcher.run()

    assert wait_values == []
    assert mock_watcher.stream.call_count == 1


def test_retries_initial_list_on_transient_error() -> None:
    list_attempts = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal list_attempts
        list_attempts += 1
        if list_attempts == 1:
            raise ApiException(status=500, reason="temporary failure")
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=[])

    core_api = SimpleNamespace(list_namespaced_persistent_volume_claim=fake_list)
    watcher = _make_watcher(core_api, RecordingHandler())
    wait_values: list[float] = []
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        watcher.request_stop()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("ebs_tagger.src.dispatcher.watch.Watch", return_value=mock_watcher),
        patch(
            "ebs_tagger.src.dispatcher.threading.Event.wait",
            side_effect=_fake_wait(wait_values),
        ),
        patch("ebs_tagger.src.dispatcher.random.random", return_value=0.5),
    ):
        watcher.run()

    assert list_attempts == 2
    assert wait_values == [pytest.approx(1.0)]
    assert mock_watcher.stream.call_count == 1


def test_applies_exponential_backoff_on_watch_errors() -> None:
    watcher = _make_watcher(_fake_core_api(), RecordingHandler())
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        if call_count == 4:
            raise ConnectionError("network down")
        watcher.request_stop()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("ebs_tagger.src.dispatcher.watch.Watch", return_value=mock_watcher),
        patch(
            "ebs_tagger.src.dispatcher.threading.Event.wait",
            side_effect=_fake_wait(wait_values),
        ),
        patch("ebs_tagger.src.dispatcher.random.random", return_value=0.5),
    ):
        watcher.run()

    assert wait_values == [
        pytest.approx(1.0),
        pytest.approx(2.0),
        pytest.approx(4.0),
        pytest.approx(8.0),
    ]


def test_request_stop_before_run_skips_everything() -> None:
    core_api = _fake_core_api()
    watcher = _make_watcher(core_api, RecordingHandler())
    watcher.request_stop()
    watch_factory = MagicMock()

    with patch("ebs_tagger.src.dispatcher.watch.Watch", watch_factory):
        watcher.run()

    assert core_api.calls == []
    watch_factory.assert_not_called()


# ---------------------------------------------------------------------------
# WatchDispatcher
# ---------------------------------------------------------------------------


class BlockingWatcher:
    """Watcher double whose run() blocks until request_stop()."""

    instances: list[BlockingWatcher] = []

    def __init__(self, *, ignore_stop: bool = False, **kwargs: Any) -> None:
        self.namespace = kwargs["namespace"]
        self.kwargs = kwargs
        self.ignore_stop = ignore_stop
        self.started = threading.Event()
        self.stop_requested = threading.Event()
        self.release = threading.Event()
        BlockingWatcher.instances.append(self)

    def run(self) -> None:
        self.started.set()
        if self.ignore_stop:
            self.release.wait(timeout=5)
        else:
            self.stop_requested.wait(timeout=5)

    def request_stop(self) -> None:
        self.stop_requested.set()


@pytest.fixture
def blocking_watchers() -> list[BlockingWatcher]:
    BlockingWatcher.instances = []
    return BlockingWatcher.instances


def test_dispatcher_starts_one_thread_per_namespace(
    blocking_watchers: list[BlockingWatcher],
) -> None:
    handler = RecordingHandler()
    dispatcher = WatchDispatcher(
        core_api=SimpleNamespace(),
        namespaces=["ns1", "ns2"],
        handler=handler,
        watch_timeout_seconds=7,
        watcher_factory=BlockingWatcher,
    )

    dispatcher.start()
    for watcher in blocking_watchers:
        assert watcher.started.wait(timeout=2)

    assert dispatcher.running is True
    assert [w.namespace for w in blocking_watchers] == ["ns1", "ns2"]
    assert blocking_watchers[0].kwargs["handler"] is handler
    assert blocking_watchers[0].kwargs["watch_timeout_seconds"] == 7

    assert dispatcher.stop(timeout=2) is True
    assert dispatcher.running is False
    assert all(w.stop_requested.is_set() for w in blocking_watchers)


def test_dispatcher_refuses_double_start(blocking_watchers: list[BlockingWatcher]) -> None:
    dispatcher = WatchDispatcher(
        core_api=SimpleNamespace(),
        namespaces=[],
        handler=RecordingHandler(),
        watcher_factory=BlockingWatcher,
    )

    dispatcher.start()
    try:
        with pytest.raises(RuntimeError, match="already running"):
            dispatcher.start()
    finally:
        dispatcher.stop(timeout=2)

    assert [w.namespace for w in blocking_watchers] == [ALL_NAMESPACES]


def test_dispatcher_can_restart_after_stop(blocking_watchers: list[BlockingWatcher]) -> None:
    dispatcher = WatchDispatcher(
        core_api=SimpleNamespace(),
        namespaces=["ns1"],
        handler=RecordingHandler(),
        watcher_factory=BlockingWatcher,
    )

    dispatcher.start()
    assert dispatcher.stop(timeout=2) is True
    dispatcher.start()
    assert dispatcher.stop(timeout=2) is True

    assert len(blocking_watchers) == 2


def test_dispatcher_stop_reports_stuck_threads(
    blocking_watchers: list[BlockingWatcher],
) -> None:
    def stuck_factory(**kwargs: Any) -> BlockingWatcher:
        return BlockingWatcher(ignore_stop=True, **kwargs)

    dispatcher = WatchDispatcher(
        core_api=SimpleNamespace(),
        namespaces=["ns1"],
        handler=RecordingHandler(),
        watcher_factory=stuck_factory,  # type: ignore[arg-type]
    )
    dispatcher.start()
    assert blocking_watchers[0].started.wait(timeout=2)

    assert dispatcher.stop(timeout=0.05) is False
    assert dispatcher.running is True

    blocking_watchers[0].release.set()
    assert dispatcher.stop(timeout=2) is True


def test_dispatcher_stop_sets_cancel_event_and_start_clears_it(
    blocking_watchers: list[BlockingWatcher],
) -> None:
    cancel_event = threading.Event()
    dispatcher = WatchDispatcher(
        core_api=SimpleNamespace(),
        namespaces=["ns1"],
        handler=RecordingHandler(),
        watcher_factory=BlockingWatcher,
        cancel_event=cancel_event,
    )

    dispatcher.start()
    assert cancel_event.is_set() is False
    assert dispatcher.stop(timeout=2) is True
    assert cancel_event.is_set() is True

    dispatcher.start()
    assert cancel_event.is_set() is False
    assert dispatcher.stop(timeout=2) is True
