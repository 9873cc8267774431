"""Unit tests for Docker label discovery and the event watcher."""

import re
import threading
import time
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest
import requests
from docker.errors import APIError, DockerException, NotFound

from cloudflare_companion.cli import (
    PRIORITY_DOCKER,
    DiscoveryError,
    DockerDiscovery,
    DockerEventWatcher,
    WatcherState,
)

# =============================================================================
# Fakes
# =============================================================================


def make_container(container_id: str, labels: Dict[str, str] | None) -> Dict[str, Any]:
    return {"Id": container_id, "Config": {"Labels": labels}}


def make_service(service_id: str, labels: Dict[str, str], task_labels: Dict[str, str] | None = None):
    return {
        "ID": service_id,
        "Spec": {
            "Labels": labels,
            "TaskTemplate": {"ContainerSpec": {"Labels": task_labels or {}}},
        },
    }


def make_client(
    containers: List[Dict[str, Any]] | None = None,
    services: List[Dict[str, Any]] | None = None,
) -> MagicMock:
    """Docker client whose low-level API serves the given containers and services."""
    by_id = {c["Id"]: c for c in containers or []}
    services_by_id = {s["ID"]: s for s in services or []}

    def inspect_container(container_id: str) -> Dict[str, Any]:
        if container_id not in by_id:
            raise NotFound(f"No such container: {container_id}")
        return by_id[container_id]

    def inspect_service(service_id: str) -> Dict[str, Any]:
        if service_id not in services_by_id:
            raise NotFound(f"No such service: {service_id}")
        return services_by_id[service_id]

    client = MagicMock()
    client.api.containers.return_value = [{"Id": cid} for cid in by_id]
    client.api.inspect_container.side_effect = inspect_container
    client.api.services.return_value = list(services_by_id.values())
    client.api.inspect_service.side_effect = inspect_service
    return client


class FakeStream:
    """Finite event stream with the close() hook of docker's CancellableStream."""

    def __init__(self, events: List[Dict[str, Any]]):
        self._events = events
        self.closed = False

    def __iter__(self):
        return iter(self._events)

    def close(self) -> None:
        self.closed = True


class BlockingStream:
    """Stream that blocks until closed, like an idle daemon connection."""

    def __init__(self):
        self._closed = threading.Event()
        self.started = threading.Event()

    def __iter__(self):
        self.started.set()
        self._closed.wait(5)
        return iter(())

    def close(self) -> None:
        self._closed.set()


class FailingStream:
    """Stream that delivers some events, then breaks mid-read."""

    def __init__(self, events: List[Dict[str, Any]], error: Exception):
        self._events = events
        self._error = error
        self.close_calls = 0

    def __iter__(self):
        yield from self._events
        raise self._error

    def close(self) -> None:
        self.close_calls += 1


def container_start(container_id: str, ts: int = 0) -> Dict[str, Any]:
    return {"Type": "container", "Action": "start", "Actor": {"ID": container_id}, "time": ts}


# =============================================================================
# Label Discovery
# =============================================================================


class TestCheckLabels:
    """Tests for hostname extraction from labels."""

    def test_v2_router_rule_label(self) -> None:
        discovery = DockerDiscovery(make_client())
        labels = {
            "traefik.http.routers.app.rule": "Host(`app.example.com`) && PathPrefix(`/`)",
            "traefik.http.services.app.loadbalancer.server.port": "80",
        }

        assert discovery.check_labels("Container", "c1", labels) == {
            "app.example.com": PRIORITY_DOCKER
        }

    def test_v2_ignores_rule_without_host(self) -> None:
        discovery = DockerDiscovery(make_client())
        labels = {"traefik.http.routers.app.rule": "PathPrefix(`/api`)"}

        assert discovery.check_labels("Container", "c1", labels) == {}

    def test_v1_frontend_rule_label(self) -> None:
        discovery = DockerDiscovery(make_client(), traefik_version="1")
        labels = {"traefik.web.frontend.rule": "Host:a.example.com,b.example.com"}

        assert discovery.check_labels("Container", "c1", labels) == {
            "a.example.com": PRIORITY_DOCKER,
            "b.example.com": PRIORITY_DOCKER,
        }

    def test_v1_ignores_v2_labels(self) -> None:
        discovery = DockerDiscovery(make_client(), traefik_version="1")
        labels = {"traefik.http.routers.app.rule": "Host(`app.example.com`)"}

        assert discovery.check_labels("Container", "c1", labels) == {}

    def test_filter_requires_matching_label(self) -> None:
        discovery = DockerDiscovery(
            make_client(),
            filter_label=re.compile("traefik.constraint"),
            filter_value=re.compile("^public$"),
        )
        rule = {"traefik.http.routers.app.rule": "Host(`app.example.com`)"}

        assert discovery.check_labels("Container", "c1", rule) == {}
        assert discovery.check_labels(
            "Container", "c1", {**rule, "traefik.constraint": "private"}
        ) == {}
        assert discovery.check_labels(
            "Container", "c1", {**rule, "traefik.constraint": "public"}
        ) == {"app.example.com": PRIORITY_DOCKER}


class TestInitialScan:
    """Tests for the startup snapshot."""

    def test_scans_all_running_containers(self) -> None:
        client = make_client(
            containers=[
                make_container("c1", {"traefik.http.routers.a.rule": "Host(`a.example.com`)"}),
                make_container("c2", None),
                make_container("c3", {"traefik.http.routers.b.rule": "Host(`b.example.com`)"}),
            ]
        )

        assert DockerDiscovery(client).get_initial_mappings() == {
            "a.example.com": PRIORITY_DOCKER,
            "b.example.com": PRIORITY_DOCKER,
        }

    def test_skips_container_that_vanishes_during_scan(self) -> None:
        client = make_client(
            containers=[
                make_container("c1", {"traefik.http.routers.a.rule": "Host(`a.example.com`)"})
            ]
        )
        client.api.containers.return_value = [{"Id": "gone"}, {"Id": "c1"}]

        assert DockerDiscovery(client).get_initial_mappings() == {
            "a.example.com": PRIORITY_DOCKER
        }

    def test_listing_failure_raises_discovery_error(self) -> None:
        client = make_client()
        client.api.containers.side_effect = APIError("daemon unavailable")

        with pytest.raises(DiscoveryError):
            DockerDiscovery(client).get_initial_mappings()

    def test_swarm_mode_includes_service_labels(self) -> None:
        client = make_client(
            services=[
                make_service("s1", {"traefik.http.routers.s.rule": "Host(`svc.example.com`)"})
            ]
        )

        assert DockerDiscovery(client, swarm_mode=True).get_initial_mappings() == {
            "svc.example.com": PRIORITY_DOCKER
        }
        assert DockerDiscovery(client).get_initial_mappings() == {}

    def test_swarm_v1_reads_container_spec_labels(self) -> None:
        client = make_client(
            services=[
                make_service(
                    "s1",
                    {"traefik.web.frontend.rule": "Host:ignored.example.com"},
                    task_labels={"traefik.web.frontend.rule": "Host:task.example.com"},
                )
            ]
        )
        discovery = DockerDiscovery(client, traefik_version="1", swarm_mode=True)

        assert discovery.get_initial_mappings() == {"task.example.com": PRIORITY_DOCKER}

    def test_service_listing_failure_raises_discovery_error(self) -> None:
        client = make_client()
        client.api.services.side_effect = APIError("not a swarm manager")

        with pytest.raises(DiscoveryError):
            DockerDiscovery(client, swarm_mode=True).get_initial_mappings()


class TestProcessEvent:
    """Tests for single-event handling."""

    def test_container_start_is_inspected(self) -> None:
        client = make_client(
            containers=[
                make_container("c1", {"traefik.http.routers.a.rule": "Host(`a.example.com`)"})
            ]
        )

        mappings = DockerDiscovery(client).process_event(container_start("c1"))

        assert mappings == {"a.example.com": PRIORITY_DOCKER}

    def test_other_container_actions_are_ignored(self) -> None:
        client = make_client()
        event = {"Type": "container", "Action": "die", "Actor": {"ID": "c1"}}

        assert DockerDiscovery(client).process_event(event) == {}
        client.api.inspect_container.assert_not_called()

    def test_service_update_only_in_swarm_mode(self) -> None:
        client = make_client(
            services=[
                make_service("s1", {"traefik.http.routers.s.rule": "Host(`svc.example.com`)"})
            ]
        )
        event = {"Type": "service", "Action": "update", "Actor": {"ID": "s1"}}

        assert DockerDiscovery(client).process_event(event) == {}
        assert DockerDiscovery(client, swarm_mode=True).process_event(event) == {
            "svc.example.com": PRIORITY_DOCKER
        }

    def test_event_without_actor_is_skipped(self) -> None:
        client = make_client()
        event = {"Type": "container", "Action": "start", "Actor": {}}

        assert DockerDiscovery(client).process_event(event) == {}

    def test_inspect_failure_yields_empty_mapping(self) -> None:
        assert DockerDiscovery(make_client()).process_event(container_start("missing")) == {}


# =============================================================================
# Event Watcher
# =============================================================================


def make_watcher(client: MagicMock, on_mappings, stop_event: threading.Event, **kwargs):
    discovery = DockerDiscovery(client)
    return DockerEventWatcher(
        client,
        discovery,
        on_mappings,
        stop_event=stop_event,
        backoff_seconds=0.01,
        **kwargs,
    )


class TestDockerEventWatcher:
    """Tests for the reconnecting event loop."""

    def test_delivers_mappings_and_reconnects_from_cursor(self) -> None:
        client = make_client(
            containers=[
                make_container("c1", {"traefik.http.routers.a.rule": "Host(`a.example.com`)"}),
                make_container("c2", {"traefik.http.routers.b.rule": "Host(`b.example.com`)"}),
            ]
        )
        stop_event = threading.Event()
        delivered: List[Dict[str, int]] = []
        streams = [
            DockerException("connection refused"),
            FakeStream([container_start("c1", 100), container_start("c2", 200)]),
        ]

        def events(**kwargs):
            if streams:
                item = streams.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
            stop_event.set()
            return FakeStream([])

        client.api.events.side_effect = events
        watcher = make_watcher(client, delivered.append, stop_event, since=50)

        thread = threading.Thread(target=watcher.run)
        thread.start()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert watcher.state is WatcherState.STOPPED
        assert delivered == [
            {"a.example.com": PRIORITY_DOCKER},
            {"b.example.com": PRIORITY_DOCKER},
        ]
        since_values = [c.kwargs["since"] for c in client.api.events.call_args_list]
        assert since_values == [50, 50, 200]
        assert client.api.events.call_args.kwargs["filters"] == {"type": ["container", "service"]}

    def test_handler_errors_do_not_stop_the_stream(self) -> None:
        client = make_client(
            containers=[
                make_container("c1", {"traefik.http.routers.a.rule": "Host(`a.example.com`)"}),
                make_container("c2", {"traefik.http.routers.b.rule": "Host(`b.example.com`)"}),
            ]
        )
        stop_event = threading.Event()
        delivered: List[Dict[str, int]] = []

        def on_mappings(mappings: Dict[str, int]) -> None:
            delivered.append(mappings)
            if len(delivered) == 1:
                raise RuntimeError("sync failed")
            stop_event.set()

        client.api.events.return_value = FakeStream(
            [container_start("c1", 10), container_start("c2", 11)]
        )
        watcher = make_watcher(client, on_mappings, stop_event, since=1)

        thread = threading.Thread(target=watcher.run)
        thread.start()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert len(delivered) == 2
        assert watcher.cursor == 11

    def test_read_error_backs_off_and_resumes_from_cursor(self) -> None:
        """A stream that breaks mid-read reconnects from the last event seen."""
        client = make_client(
            containers=[
                make_container("c1", {"traefik.http.routers.a.rule": "Host(`a.example.com`)"})
            ]
        )
        stop_event = threading.Event()
        delivered: List[Dict[str, int]] = []
        broken = FailingStream(
            [container_start("c1", 150)],
            requests.exceptions.ConnectionError("connection reset by peer"),
        )
        streams: List[Any] = [broken]

        def events(**kwargs):
            if streams:
                return streams.pop(0)
            stop_event.set()
            return FakeStream([])

        client.api.events.side_effect = events
        watcher = make_watcher(client, delivered.append, stop_event, since=100)

        thread = threading.Thread(target=watcher.run)
        thread.start()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert delivered == [{"a.example.com": PRIORITY_DOCKER}]
        since_values = [c.kwargs["since"] for c in client.api.events.call_args_list]
        assert since_values == [100, 150]
        assert broken.close_calls == 1

    def test_subscription_is_bounded_by_until(self) -> None:
        client = make_client()
        stop_event = threading.Event()

        def events(**kwargs):
            stop_event.set()
            return FakeStream([])

        client.api.events.side_effect = events
        watcher = make_watcher(client, lambda m: None, stop_event, window_seconds=45)

        before = int(time.time())
        watcher.run()

        kwargs = client.api.events.call_args.kwargs
        assert kwargs["since"] <= before + 1
        assert before + 45 <= kwargs["until"] <= int(time.time()) + 45

    def test_quiet_stream_resubscribes_when_window_ends(self) -> None:
        """A stream that stays silent until its window closes is renewed without backoff."""
        client = make_client()
        stop_event = threading.Event()
        calls: List[Dict[str, Any]] = []

        def events(**kwargs):
            calls.append(kwargs)
            if len(calls) >= 3:
                stop_event.set()
            return FakeStream([])

        client.api.events.side_effect = events
        watcher = DockerEventWatcher(
            client,
            DockerDiscovery(client),
            lambda m: None,
            stop_event=stop_event,
            backoff_seconds=30,
            window_seconds=0,
        )

        thread = threading.Thread(target=watcher.run)
        thread.start()
        thread.join(timeout=5)

        # A 30s backoff would still be pending; only window renewal gets here.
        assert not thread.is_alive()
        assert len(calls) == 3
        assert calls[1]["since"] == calls[0]["until"]
        assert calls[2]["since"] == calls[1]["until"]

    def test_cursor_never_moves_backwards(self) -> None:
        client = make_client()
        watcher = make_watcher(client, lambda m: None, threading.Event(), since=100)

        watcher.handle_event({"Type": "container", "Action": "die", "time": 90})

        assert watcher.cursor == 100

    def test_stop_closes_blocked_stream(self) -> None:
        client = make_client()
        stream = BlockingStream()
        client.api.events.return_value = stream
        stop_event = threading.Event()
        watcher = make_watcher(client, lambda m: None, stop_event)

        thread = threading.Thread(target=watcher.run)
        thread.start()
        assert stream.started.wait(5)

        started = time.monotonic()
        watcher.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert time.monotonic() - started < 5
        assert watcher.state is WatcherState.STOPPED
        assert client.api.events.call_count == 1

    def test_stop_before_run_exits_immediately(self) -> None:
        client = make_client()
        stop_event = threading.Event()
        stop_event.set()
        watcher = make_watcher(client, lambda m: None, stop_event)

        watcher.run()

        assert watcher.state is WatcherState.STOPPED
        client.api.events.assert_not_called()
