"""Tests for the API client and the per-stage debounced saver."""
from __future__ import annotations

import logging
import threading
import uuid
from datetime import date

import httpx
import pytest

from client import DebouncedStageSaver, ProgressClient, ProgressClientError, StageEdit

BASE = "http://testserver"


class FakeTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


@pytest.fixture()
def timers():
    return []


@pytest.fixture()
def saved():
    return []


@pytest.fixture()
def statuses():
    return []


@pytest.fixture()
def timer_factory(timers):
    def factory(interval, function, args=()):
        timer = FakeTimer(interval, function, args)
        timers.append(timer)
        return timer

    return factory


@pytest.fixture()
def saver(timer_factory, saved, statuses):
    return DebouncedStageSaver(
        saved.append,
        delay=2.0,
        on_status=lambda message, ok: statuses.append((message, ok)),
        timer_factory=timer_factory,
    )


def _edit(pct, stage="s1", plot="p1", label="Roof"):
    return StageEdit(plot_id=plot, stage_id=stage, completion_percentage=pct, label=label)


# ---------------------------------------------------------------------------
# ProgressClient
# ---------------------------------------------------------------------------

class TestProgressClient:
    def test_reads_through_envelope(self, api_transport, site):
        with ProgressClient(base_url=BASE, transport=api_transport) as client:
            plots = client.list_plots()
            types = client.list_construction_types()
            progress = client.get_plot_progress(site.plot_id)
        assert [p["id"] for p in plots] == [site.plot_id]
        assert types[0]["name"] == "Timber Frame"
        assert len(progress["stages"]) == 3

    def test_save_falls_back_to_create_when_record_is_gone(self, api_transport, site):
        with ProgressClient(base_url=BASE, transport=api_transport) as client:
            progress = client.save_stage_progress(
                site.plot_id,
                site.stage_ids[0],
                45,
                recorded_at=date(2025, 11, 20),
                progress_id=str(uuid.uuid4()),
            )
            assert progress["completion_percentage"] == 45
            assert progress["actual_start_date"] == "2025-11-20"

            updated = client.save_stage_progress(
                site.plot_id, site.stage_ids[0], 80, progress_id=progress["id"]
            )
        assert updated["id"] == progress["id"]
        assert updated["completion_percentage"] == 80

    def test_error_detail_is_surfaced(self, api_transport, site):
        with ProgressClient(base_url=BASE, transport=api_transport) as client:
            with pytest.raises(ProgressClientError) as excinfo:
                client.get_plot_progress(str(uuid.uuid4()))
        assert excinfo.value.status_code == 404
        assert excinfo.value.not_found
        assert "not found" in str(excinfo.value)

    def test_validation_errors_are_flattened(self, api_transport, site):
        with ProgressClient(base_url=BASE, transport=api_transport) as client:
            with pytest.raises(ProgressClientError) as excinfo:
                client.record_progress(site.plot_id, site.stage_ids[0], 150)
        assert excinfo.value.status_code == 422
        assert str(excinfo.value)

    def test_other_update_failures_do_not_fall_back(self):
        calls = []

        def handler(request):
            calls.append(request.method)
            return httpx.Response(500, json={"detail": "database unavailable"})

        with ProgressClient(base_url=BASE, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProgressClientError, match="database unavailable"):
                client.save_stage_progress("p", "s", 10, progress_id="abc")
        assert calls == ["PUT"]

    def test_string_validation_details_are_joined(self):
        def handler(request):
            return httpx.Response(422, json={"detail": ["bad plot", "bad stage"]})

        with ProgressClient(base_url=BASE, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProgressClientError) as excinfo:
                client.record_progress("p", "s", 10)
        assert str(excinfo.value) == "bad plot; bad stage"
        assert excinfo.value.status_code == 422

    def test_non_json_success_body_is_a_client_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>proxy login</html>")

        with ProgressClient(base_url=BASE, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProgressClientError, match="non-JSON") as excinfo:
                client.list_plots()
        assert excinfo.value.status_code == 200

    def test_success_without_data_envelope_is_a_client_error(self):
        def handler(request):
            return httpx.Response(200, json=[{"id": "p1"}])

        with ProgressClient(base_url=BASE, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProgressClientError, match="no data envelope"):
                client.list_plots()

    def test_transport_errors_become_client_errors(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with ProgressClient(base_url=BASE, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProgressClientError) as excinfo:
                client.list_plots()
        assert excinfo.value.status_code is None
        assert "connection refused" in str(excinfo.value)

    def test_base_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("SITE_TRACKER_API_URL", "http://site.example:9000/")
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"data": []})

        with ProgressClient(transport=httpx.MockTransport(handler)) as client:
            assert client.list_plots() == []
        assert seen == ["http://site.example:9000/api/v1/plots"]


# ---------------------------------------------------------------------------
# DebouncedStageSaver
# ---------------------------------------------------------------------------

class TestDebouncedStageSaver:
    def test_later_edit_supersedes_pending_one(self, saver, timers, saved, statuses):
        saver.schedule(_edit(30))
        saver.schedule(_edit(45))

        assert timers[0].cancelled
        assert timers[1].started and timers[1].interval == 2.0
        # a cancelled timer that fires anyway must not save
        timers[0].fire()
        assert saved == []

        timers[1].fire()
        assert [e.completion_percentage for e in saved] == [45]
        assert statuses == [("Updated Roof", True)]
        assert saver.pending() == []

    def test_stages_are_debounced_independently(self, saver, timers, saved):
        saver.schedule(_edit(10, stage="s1"))
        saver.schedule(_edit(20, stage="s2"))
        assert not timers[0].cancelled
        assert sorted(saver.pending()) == [("p1", "s1"), ("p1", "s2")]

        timers[1].fire()
        timers[0].fire()
        assert [e.stage_id for e in saved] == ["s2", "s1"]

    def test_flush_saves_immediately(self, saver, timers, saved):
        saver.schedule(_edit(70))
        assert saver.flush("p1", "s1") is True
        assert timers[0].cancelled
        assert [e.completion_percentage for e in saved] == [70]
        assert saver.flush("p1", "s1") is False

    def test_failures_are_reported_and_logged(self, timer_factory, timers, statuses, caplog):
        def failing_save(edit):
            raise ProgressClientError("Failed to update stage progress", status_code=500)

        saver = DebouncedStageSaver(
            failing_save,
            on_status=lambda message, ok: statuses.append((message, ok)),
            timer_factory=timer_factory,
        )
        saver.schedule(_edit(50))
        with caplog.at_level(logging.WARNING, logger="client"):
            timers[0].fire()
        assert statuses == [("Failed to update stage progress", False)]
        assert "Failed to update stage progress" in caplog.text

    def test_unexpected_errors_are_reported(self, timer_factory, timers, statuses, caplog):
        def broken_save(edit):
            raise KeyError("progress")

        saver = DebouncedStageSaver(
            broken_save,
            on_status=lambda message, ok: statuses.append((message, ok)),
            timer_factory=timer_factory,
        )
        saver.schedule(_edit(50))
        with caplog.at_level(logging.ERROR, logger="client"):
            timers[0].fire()
        assert statuses == [("'progress'", False)]
        assert "Unexpected error saving Roof" in caplog.text
        assert saver.pending() == []

    def test_cancel_all(self, saver, timers, saved):
        saver.schedule(_edit(10, stage="s1"))
        saver.schedule(_edit(20, stage="s2"))
        saver.cancel_all()
        assert all(t.cancelled for t in timers)
        assert saver.pending() == []
        for t in timers:
            t.fire()
        assert saved == []

    def test_rejects_out_of_range_before_scheduling(self, saver, timers):
        with pytest.raises(ValueError):
            saver.schedule(_edit(101))
        assert timers == []

    def test_real_timer_saves_only_last_edit(self):
        done = threading.Event()
        saved = []

        def save(edit):
            saved.append(edit.completion_percentage)
            done.set()

        saver = DebouncedStageSaver(save, delay=0.05)
        saver.schedule(_edit(10))
        saver.schedule(_edit(20))
        saver.schedule(_edit(30))
        assert done.wait(timeout=5)
        saver.cancel_all()
        assert saved == [30]

    def test_real_timer_reports_a_garbled_response(self):
        done = threading.Event()
        statuses = []

        def on_status(message, ok):
            statuses.append((message, ok))
            done.set()

        def handler(request):
            return httpx.Response(200, text="OK")

        with ProgressClient(base_url=BASE, transport=httpx.MockTransport(handler)) as client:
            saver = DebouncedStageSaver.for_client(client, delay=0.01, on_status=on_status)
            saver.schedule(_edit(40))
            assert done.wait(timeout=5)
        assert len(statuses) == 1
        message, ok = statuses[0]
        assert ok is False
        assert "non-JSON" in message

    def test_for_client_wires_fallback(self, api_transport, site):
        statuses = []
        with ProgressClient(base_url=BASE, transport=api_transport) as client:
            saver = DebouncedStageSaver.for_client(
                client, delay=60, on_status=lambda message, ok: statuses.append((message, ok))
            )
            saver.schedule(
                StageEdit(
                    plot_id=site.plot_id,
                    stage_id=site.stage_ids[2],
                    completion_percentage=15,
                    progress_id=str(uuid.uuid4()),
                    label="Roof",
                )
            )
            assert saver.flush(site.plot_id, site.stage_ids[2])
            progress = client.get_plot_progress(site.plot_id)
        assert statuses == [("Updated Roof", True)]
        assert progress["stages"][2]["progress"]["completion_percentage"] == 15
