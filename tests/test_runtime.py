import dataclasses

import pytest

from app.core.errors import QueueUnavailableError
from app.services.runtime import start_runtime, stop_runtime


def _unreachable(config):
    raise QueueUnavailableError("Queue broker unreachable: connection refused")


def test_queue_down_outside_production_disables_scheduler(runtime, monkeypatch):
    monkeypatch.setattr(runtime.queue, "initialize", _unreachable)

    assert start_runtime(runtime) is False
    assert runtime.scheduler.is_active() is False
    assert runtime.tracker.list_jobs() == []


def test_queue_down_in_production_is_fatal(runtime, monkeypatch):
    runtime.settings = dataclasses.replace(runtime.settings, env="production")
    monkeypatch.setattr(runtime.queue, "initialize", _unreachable)

    with pytest.raises(QueueUnavailableError):
        start_runtime(runtime)


def test_start_and_stop(runtime):
    assert start_runtime(runtime) is True
    assert runtime.scheduler.is_active() is True
    assert runtime.queue.is_ready() is True
    assert len(runtime.tracker.list_jobs()) == 2

    stop_runtime(runtime)
    assert runtime.scheduler.is_active() is False


def test_dispatcher_uses_injected_client(runtime):
    assert runtime.dispatcher.is_ready() is True
