"""
Import wizard — client-side driver for one statement import session.

The wizard never processes anything itself.  It issues the pipeline calls
through ``ImportApiClient`` on a worker, polls the import record through a
``StatusWatch`` and folds both into a single client state.  All state lives
behind one lock and is read when a callback fires; results of operations that
were cancelled in the meantime are recognised by a generation counter and
dropped.
"""
from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from api_client import ApiError, ImportApiClient
from config import settings

logger = logging.getLogger("StatementImporter.Wizard")

TIMEOUT_MESSAGE = "Processing timed out. Please try again."


class WizardState(str, enum.Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    CHECKING_ENCRYPTION = "checking_encryption"
    PASSWORD_REQUIRED = "password_required"
    VALIDATING_PASSWORD = "validating_password"
    EXTRACTING = "extracting"
    PREVIEW_READY = "preview_ready"
    CATEGORIZING = "categorizing"
    CONFIRM_READY = "confirm_ready"
    COMPLETED = "completed"
    ERROR = "error"


S = WizardState

# Forward transitions; cancel (→ idle) is allowed from anywhere and bypasses this table.
WIZARD_TRANSITIONS = {
    S.IDLE: {S.UPLOADING},
    S.UPLOADING: {S.CHECKING_ENCRYPTION, S.ERROR},
    S.CHECKING_ENCRYPTION: {S.PASSWORD_REQUIRED, S.EXTRACTING, S.PREVIEW_READY, S.ERROR},
    S.PASSWORD_REQUIRED: {S.VALIDATING_PASSWORD, S.ERROR},
    S.VALIDATING_PASSWORD: {S.PASSWORD_REQUIRED, S.EXTRACTING, S.PREVIEW_READY, S.ERROR},
    S.EXTRACTING: {S.PASSWORD_REQUIRED, S.PREVIEW_READY, S.ERROR},
    S.PREVIEW_READY: {S.CATEGORIZING, S.COMPLETED, S.ERROR},
    S.CATEGORIZING: {S.CONFIRM_READY, S.ERROR},
    S.CONFIRM_READY: {S.CATEGORIZING, S.COMPLETED, S.ERROR},
    S.COMPLETED: set(),
    S.ERROR: {S.IDLE},
}

# Server import status → client state. ``pending`` carries no information.
SERVER_STATUS_MAP = {
    "processing": S.EXTRACTING,
    "password_required": S.PASSWORD_REQUIRED,
    "extracted": S.PREVIEW_READY,
    "categorizing": S.CATEGORIZING,
    "ready": S.CONFIRM_READY,
    "completed": S.COMPLETED,
    "failed": S.ERROR,
}

TIMED_STATES = {S.CHECKING_ENCRYPTION, S.VALIDATING_PASSWORD, S.EXTRACTING}
WATCH_STOP_STATES = {S.IDLE, S.COMPLETED, S.ERROR}


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


# ─── Status watch ─────────────────────────────────────────────────────────────

class StatusWatch:
    """Polls ``fetch`` every ``interval`` seconds on a daemon thread and hands
    each record to ``on_record`` until cancelled."""

    def __init__(
        self,
        fetch: Callable[[], Dict],
        on_record: Callable[[Dict], None],
        interval: float = None,
    ):
        self.fetch = fetch
        self.on_record = on_record
        self.interval = interval if interval is not None else settings.WIZARD_POLL_INTERVAL_SECONDS
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def start(self) -> "StatusWatch":
        self._thread = threading.Thread(target=self._run, name="import-status-watch", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._stop.set()

    def poll_once(self) -> Optional[Dict]:
        try:
            record = self.fetch()
        except ApiError as e:
            logger.warning(f"Status poll failed: {e.message}")
            return None
        if not self._stop.is_set():
            self.on_record(record)
        return record

    def _run(self):
        while not self._stop.wait(self.interval):
            self.poll_once()


# ─── Wizard ───────────────────────────────────────────────────────────────────

@dataclass
class WizardSnapshot:
    state: WizardState
    import_id: Optional[str] = None
    message: Optional[str] = None
    extraction: Dict = field(default_factory=dict)
    categorization: Dict = field(default_factory=dict)
    commit: Dict = field(default_factory=dict)


class ImportWizard:
    def __init__(
        self,
        api: ImportApiClient,
        run_async: Callable[[Callable[[], None]], object] = None,
        timer_factory: Callable[[float, Callable[[], None]], object] = None,
        watch_factory: Callable[..., StatusWatch] = None,
        stage_timeout: float = None,
        poll_interval: float = None,
        on_change: Callable[[WizardSnapshot], None] = None,
    ):
        self.api = api
        self._executor = None
        if run_async is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="import-wizard")
            run_async = self._executor.submit
        self._run_async = run_async
        self._timer_factory = timer_factory or self._default_timer
        self._watch_factory = watch_factory or StatusWatch
        self.stage_timeout = stage_timeout if stage_timeout is not None else settings.WIZARD_STAGE_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else settings.WIZARD_POLL_INTERVAL_SECONDS
        self.on_change = on_change

        self._lock = threading.RLock()
        self._state = S.IDLE
        self._import_id: Optional[str] = None
        self._message: Optional[str] = None
        self._generation = 0
        self._timer = None
        self._timer_token = 0
        self._watch: Optional[StatusWatch] = None
        self._last_record_at: Optional[datetime] = None
        self._password_marker: Optional[datetime] = None
        self._results: Dict[str, Dict] = {"extraction": {}, "categorization": {}, "commit": {}}
        self._closed = False

    @staticmethod
    def _default_timer(interval: float, callback: Callable[[], None]):
        timer = threading.Timer(interval, callback)
        timer.daemon = True
        return timer

    # ── Introspection ──

    @property
    def state(self) -> WizardState:
        with self._lock:
            return self._state

    @property
    def import_id(self) -> Optional[str]:
        with self._lock:
            return self._import_id

    def snapshot(self) -> WizardSnapshot:
        with self._lock:
            return WizardSnapshot(
                state=self._state,
                import_id=self._import_id,
                message=self._message,
                extraction=dict(self._results["extraction"]),
                categorization=dict(self._results["categorization"]),
                commit=dict(self._results["commit"]),
            )

    # ── User operations ──

    def start(self, content: bytes, filename: str) -> None:
        with self._lock:
            self._require(S.IDLE)
            self._generation += 1
            gen = self._generation
            self._transition(S.UPLOADING)

        def task():
            try:
                uploaded = self.api.upload(content, filename)
            except ApiError as e:
                self._complete(gen, lambda: self._fail(e.message))
                return
            if not self._complete(gen, lambda: self._on_uploaded(uploaded["importId"])):
                return
            self._extract(gen, uploaded["importId"], None)

        self._run_async(task)

    def submit_password(self, password: str) -> None:
        with self._lock:
            self._require(S.PASSWORD_REQUIRED)
            gen = self._generation
            import_id = self._import_id
            # poll answers not newer than this are the prompt we are answering
            self._password_marker = self._last_record_at
            self._transition(S.VALIDATING_PASSWORD)
        self._run_async(lambda: self._extract(gen, import_id, password))

    def categorize(self) -> None:
        with self._lock:
            self._require(S.PREVIEW_READY, S.CONFIRM_READY)
            gen = self._generation
            import_id = self._import_id
            self._transition(S.CATEGORIZING)

        def task():
            try:
                result = self.api.categorize(import_id)
            except ApiError as e:
                self._complete(gen, lambda: self._fail(e.message))
                return
            self._complete(gen, lambda: self._on_categorized(result))

        self._run_async(task)

    def confirm(self, transactions: Optional[List[Dict]] = None) -> None:
        with self._lock:
            self._require(S.PREVIEW_READY, S.CONFIRM_READY)
            gen = self._generation
            import_id = self._import_id

        def task():
            try:
                result = self.api.commit(import_id, transactions)
            except ApiError as e:
                self._complete(gen, lambda: self._fail(e.message))
                return
            self._complete(gen, lambda: self._on_committed(result))

        self._run_async(task)

    def cancel(self) -> None:
        """Go back to idle, deleting the server import unless it was committed."""
        import_id = self._reset()
        self._discard(import_id)

    def retry(self) -> None:
        """From ``error``: discard the failed import; the session stays open."""
        with self._lock:
            self._require(S.ERROR)
        import_id = self._reset()
        self._discard(import_id)

    def close(self) -> None:
        self.cancel()
        with self._lock:
            self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    # ── Observations ──

    def observe(self, record: Dict) -> None:
        """Fold one polled import record into the client state.

        Repeated, out-of-order and foreign records are ignored, so calling
        this any number of times with the same record has no further effect.
        """
        with self._lock:
            if not record or record.get("id") != self._import_id:
                return
            ts = _parse_timestamp(record.get("updatedAt"))
            if ts and self._last_record_at and ts < self._last_record_at:
                logger.debug(f"Ignoring stale record for {self._import_id}")
                return
            target = SERVER_STATUS_MAP.get(record.get("status"))
            if self._state == S.VALIDATING_PASSWORD and target == S.PASSWORD_REQUIRED:
                # only a prompt written after the submission answers it
                marker = self._password_marker
                if marker is None or ts is None or ts <= marker:
                    return
            if ts:
                self._last_record_at = ts
            if target is None:
                return

            if target == S.EXTRACTING:
                message = record.get("progressMessage")
            elif target in (S.ERROR, S.PASSWORD_REQUIRED):
                message = record.get("errorMessage")
            else:
                message = None
            self._advance(target, message)

    # ── Internals (lock held unless noted) ──

    def _require(self, *states: WizardState) -> None:
        if self._closed:
            raise RuntimeError("Wizard is closed")
        if self._state not in states:
            allowed = ", ".join(s.value for s in states)
            raise RuntimeError(f"Cannot do that while {self._state.value} (needs {allowed})")

    def _complete(self, gen: int, action: Callable[[], None]) -> bool:
        """Run ``action`` under the lock unless the operation was superseded.

        Called from worker threads.
        """
        with self._lock:
            if gen != self._generation:
                logger.info("Discarding result of a cancelled operation")
                return False
            action()
            return self._state != S.ERROR

    def _extract(self, gen: int, import_id: str, password: Optional[str]) -> None:
        """Worker side of start/submit_password."""
        try:
            result = self.api.extract(import_id, password)
        except ApiError as e:
            self._complete(gen, lambda: self._fail(e.message))
            return
        self._complete(gen, lambda: self._on_extract_result(result))

    def _on_uploaded(self, import_id: str) -> None:
        self._import_id = import_id
        self._last_record_at = None
        self._password_marker = None
        self._transition(S.CHECKING_ENCRYPTION)
        self._watch = self._watch_factory(
            lambda: self.api.get_import(import_id), self.observe, self.poll_interval,
        )
        self._watch.start()

    def _on_extract_result(self, result: Dict) -> None:
        if result.get("passwordRequired"):
            self._advance(S.PASSWORD_REQUIRED, result.get("message"))
        elif result.get("success"):
            self._results["extraction"] = result
            self._advance(S.PREVIEW_READY)
        else:
            self._fail(result.get("message") or result.get("error") or "Extraction failed")

    def _on_categorized(self, result: Dict) -> None:
        self._results["categorization"] = result
        self._advance(S.CONFIRM_READY)

    def _on_committed(self, result: Dict) -> None:
        self._results["commit"] = result
        self._advance(S.COMPLETED)

    def _fail(self, message: str) -> None:
        if S.ERROR in WIZARD_TRANSITIONS[self._state]:
            self._transition(S.ERROR, message)

    def _advance(self, target: WizardState, message: Optional[str] = None) -> None:
        """Idempotent move. Re-entering the current state only refreshes the
        message; moves the graph does not allow from here are ignored."""
        if target == self._state:
            if message and message != self._message:
                self._message = message
                if target in TIMED_STATES:
                    # a new progress line counts as forward progress
                    self._cancel_timer()
                    self._arm_timer()
                self._notify()
            return
        if target not in WIZARD_TRANSITIONS[self._state]:
            logger.debug(f"Ignoring {self._state.value} → {target.value}")
            return
        self._transition(target, message)

    def _transition(self, target: WizardState, message: Optional[str] = None) -> None:
        previous = self._state
        self._state = target
        self._message = message
        self._cancel_timer()
        if target in TIMED_STATES:
            self._arm_timer()
        if target in WATCH_STOP_STATES:
            self._stop_watch()
        logger.info(f"Wizard: {previous.value} → {target.value}")
        self._notify()

    def _notify(self) -> None:
        if self.on_change:
            self.on_change(self.snapshot())

    def _arm_timer(self) -> None:
        self._timer_token += 1
        token = self._timer_token
        self._timer = self._timer_factory(self.stage_timeout, lambda: self._on_timeout(token))
        self._timer.start()

    def _cancel_timer(self) -> None:
        self._timer_token += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self, token: int) -> None:
        with self._lock:
            if token != self._timer_token or self._state not in TIMED_STATES:
                return
            logger.warning(f"Wizard timed out in {self._state.value}")
            self._transition(S.ERROR, TIMEOUT_MESSAGE)

    def _stop_watch(self) -> None:
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None

    def _reset(self) -> Optional[str]:
        """Back to idle. Returns the import to delete, never a committed one."""
        with self._lock:
            import_id = None if self._state == S.COMPLETED else self._import_id
            self._generation += 1
            self._cancel_timer()
            self._stop_watch()
            self._import_id = None
            self._last_record_at = None
            self._password_marker = None
            self._results = {"extraction": {}, "categorization": {}, "commit": {}}
            if self._state != S.IDLE:
                self._transition(S.IDLE)
            return import_id

    def _discard(self, import_id: Optional[str]) -> None:
        """Delete the server-side import. Lock not held."""
        if not import_id:
            return
        try:
            self.api.delete_import(import_id)
        except ApiError as e:
            logger.warning(f"Could not delete import {import_id}: {e.message}")
