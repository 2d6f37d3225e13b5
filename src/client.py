"""
client.py

HTTP client for the progress timeline API, and the per-stage debounced
saver used by interactive editors.

An edit to a stage's completion percentage is not sent immediately: it is
held for a quiet period (2 seconds by default) and any further edit to the
same stage inside that window replaces it and restarts the wait.  Each
stage has its own timer, so edits on different stages never delay each
other.  Every failed save, whatever the cause, is reported to the status
callback and logged; it is not retried until the next edit.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from config import Settings

logger = logging.getLogger(__name__)

StageKey = Tuple[str, str]


class ProgressClientError(RuntimeError):
    """Raised when the API cannot be reached or answers with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except json.JSONDecodeError:
        return response.text or f"HTTP {response.status_code}"
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list):
        return "; ".join(
            str(item.get("msg", item) if isinstance(item, dict) else item) for item in detail
        )
    return f"HTTP {response.status_code}"


class ProgressClient:
    """Small synchronous client for the /api/v1 endpoints."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = Settings.from_env()
        self._base_url = (base_url or settings.api_url).rstrip("/")
        self._http = httpx.Client(
            base_url=f"{self._base_url}/api/v1",
            timeout=timeout or settings.http_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ProgressClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProgressClientError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            raise ProgressClientError(_detail(response), status_code=response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ProgressClientError(
                f"{method} {path} returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise ProgressClientError(
                f"{method} {path} returned no data envelope", status_code=response.status_code
            )
        return payload["data"]

    # --- Reads --------------------------------------------------------------

    def list_construction_types(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/construction-types")

    def list_plots(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/plots")

    def get_plot_progress(self, plot_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/plots/{plot_id}/progress")

    def get_plan_history(self, progress_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/construction-progress/{progress_id}/plan-history")

    # --- Writes -------------------------------------------------------------

    def record_progress(
        self,
        plot_id: str,
        stage_id: str,
        completion_percentage: int,
        recorded_at: Optional[date] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "plotId": str(plot_id),
            "stageId": str(stage_id),
            "completionPercentage": completion_percentage,
        }
        if recorded_at:
            payload["recordedAt"] = recorded_at.isoformat()
        return self._request("POST", "/construction-progress", json=payload)

    def update_progress(
        self,
        progress_id: str,
        completion_percentage: int,
        recorded_at: Optional[date] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"completionPercentage": completion_percentage}
        if recorded_at:
            payload["recordedAt"] = recorded_at.isoformat()
        return self._request("PUT", f"/construction-progress/{progress_id}", json=payload)

    def save_stage_progress(
        self,
        plot_id: str,
        stage_id: str,
        completion_percentage: int,
        recorded_at: Optional[date] = None,
        progress_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Update the known record, or create it.  If the record has been
        deleted in the meantime the update is retried as a create.
        """
        if progress_id:
            try:
                return self.update_progress(progress_id, completion_percentage, recorded_at)
            except ProgressClientError as exc:
                if not exc.not_found:
                    raise
                logger.info("Progress %s is gone; recording stage %s afresh", progress_id, stage_id)
        result = self.record_progress(plot_id, stage_id, completion_percentage, recorded_at)
        return result["progress"]

    def revise_plan(
        self,
        progress_id: str,
        planned_start_date: date,
        planned_end_date: date,
        reason: str,
        changed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "planned_start_date": planned_start_date.isoformat(),
            "planned_end_date": planned_end_date.isoformat(),
            "reason": reason,
        }
        if changed_by:
            payload["changed_by"] = changed_by
        return self._request(
            "POST", f"/construction-progress/{progress_id}/plan-revisions", json=payload
        )

    def replace_timeline(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", "/construction-progress/timeline", json=payload)

    def delete_progress(self, progress_id: str) -> None:
        self._request("DELETE", f"/construction-progress/{progress_id}")


# ---------------------------------------------------------------------------
# Debounced saving
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageEdit:
    plot_id: str
    stage_id: str
    completion_percentage: int
    recorded_at: Optional[date] = None
    progress_id: Optional[str] = None
    label: str = ""

    @property
    def key(self) -> StageKey:
        return (str(self.plot_id), str(self.stage_id))


StatusCallback = Callable[[str, bool], None]


class DebouncedStageSaver:
    """
    Per-stage debounce in front of a save function.

    `on_status(message, ok)` receives "Updated <stage>" after each successful
    save and the error message after each failed one.
    """

    def __init__(
        self,
        save: Callable[[StageEdit], Any],
        delay: float = 2.0,
        on_status: Optional[StatusCallback] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self._save = save
        self._delay = delay
        self._on_status = on_status
        self._timer_factory = timer_factory
        self._pending: Dict[StageKey, Tuple[Any, StageEdit, object]] = {}
        self._lock = threading.Lock()

    @classmethod
    def for_client(
        cls,
        client: ProgressClient,
        delay: Optional[float] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> "DebouncedStageSaver":
        def save(edit: StageEdit):
            return client.save_stage_progress(
                edit.plot_id,
                edit.stage_id,
                edit.completion_percentage,
                recorded_at=edit.recorded_at,
                progress_id=edit.progress_id,
            )

        if delay is None:
            delay = Settings.from_env().save_debounce_seconds
        return cls(save, delay=delay, on_status=on_status)

    def schedule(self, edit: StageEdit) -> None:
        """Queue `edit`, superseding any edit still waiting for the same stage."""
        if not (0 <= edit.completion_percentage <= 100):
            raise ValueError("completion_percentage must be between 0 and 100.")
        token = object()
        timer = self._timer_factory(self._delay, self._fire, args=(edit.key, token))
        with self._lock:
            previous = self._pending.pop(edit.key, None)
            if previous is not None:
                previous[0].cancel()
            self._pending[edit.key] = (timer, edit, token)
        timer.start()

    def flush(self, plot_id: str, stage_id: str) -> bool:
        """Save a waiting edit now (e.g. on Enter).  Returns False if none was waiting."""
        with self._lock:
            entry = self._pending.pop((str(plot_id), str(stage_id)), None)
        if entry is None:
            return False
        entry[0].cancel()
        return self._run(entry[1])

    def flush_all(self) -> None:
        for plot_id, stage_id in self.pending():
            self.flush(plot_id, stage_id)

    def cancel_all(self) -> None:
        with self._lock:
            entries = list(self._pending.values())
            self._pending.clear()
        for timer, _, _ in entries:
            timer.cancel()

    def pending(self) -> List[StageKey]:
        with self._lock:
            return list(self._pending)

    def _fire(self, key: StageKey, token: object) -> None:
        with self._lock:
            entry = self._pending.get(key)
            if entry is None or entry[2] is not token:
                return
            del self._pending[key]
        self._run(entry[1])

    def _run(self, edit: StageEdit) -> bool:
        name = edit.label or edit.stage_id
        try:
            self._save(edit)
        except ProgressClientError as exc:
            logger.warning("Saving %s for plot %s failed: %s", name, edit.plot_id, exc)
            self._report(str(exc) or "Failed to update stage progress", False)
            return False
        except Exception as exc:
            logger.exception("Unexpected error saving %s for plot %s", name, edit.plot_id)
            self._report(str(exc) or exc.__class__.__name__, False)
            return False
        self._report(f"Updated {name}", True)
        return True

    def _report(self, message: str, ok: bool) -> None:
        if self._on_status is not None:
            self._on_status(message, ok)
